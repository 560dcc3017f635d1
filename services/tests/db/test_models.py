"""Tests for model helpers and database error classification."""

import uuid
import warnings

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, SAWarning
from sqlalchemy.orm import configure_mappers

from vregistry.db.errors import is_unique_violation, violated_constraint
from vregistry.db.models import (
    CleanupPolicy,
    ContainerCacheEntry,
    MavenCacheEntry,
    NpmCacheEntry,
    Registry,
    RegistryUpstream,
    Upstream,
    cache_entry_model_for,
    generate_uuid7,
)


class _DriverError(Exception):
    def __init__(self, sqlstate=None, constraint_name=None):
        super().__init__("driver error")
        self.sqlstate = sqlstate
        self.constraint_name = constraint_name


def _integrity_error(orig: Exception) -> IntegrityError:
    return IntegrityError("INSERT ...", {}, orig)


class TestUpstream:
    @pytest.mark.parametrize(
        "base,path,expected",
        [
            ("https://repo.example.com/maven2", "com/a.pom", "https://repo.example.com/maven2/com/a.pom"),
            ("https://repo.example.com/maven2/", "/com/a.pom", "https://repo.example.com/maven2/com/a.pom"),
            ("https://registry.npmjs.org", "@acme%2fwidget", "https://registry.npmjs.org/@acme%2fwidget"),
        ],
    )
    def test_url_for(self, base, path, expected):
        assert Upstream(url=base).url_for(path) == expected

    def test_object_storage_key_fresh_per_call(self):
        upstream = Upstream(id=uuid.uuid4(), group_id=7, package_type="npm")

        first, second = upstream.object_storage_key(), upstream.object_storage_key()

        prefix = f"virtual_registries/npm/7/upstream/{upstream.id}/cache/entry/"
        assert first.startswith(prefix)
        assert second.startswith(prefix)
        assert first != second


class TestCacheEntryModels:
    def test_model_for_package_type(self):
        assert cache_entry_model_for("maven") is MavenCacheEntry
        assert cache_entry_model_for("npm") is NpmCacheEntry
        assert cache_entry_model_for("container") is ContainerCacheEntry

    def test_unknown_package_type(self):
        with pytest.raises(ValueError, match="Unknown package type"):
            cache_entry_model_for("pypi")

    def test_single_live_entry_index_is_partial(self):
        table = MavenCacheEntry.__table__
        index = next(i for i in table.indexes if i.name.endswith("_upstream_path_live"))
        assert index.unique
        assert [c.name for c in index.columns] == ["upstream_id", "relative_path"]
        assert "status = 'default'" in str(index.dialect_options["postgresql"]["where"])

    def test_only_container_entries_have_digest(self):
        assert "digest" in ContainerCacheEntry.__table__.columns
        assert "digest" not in MavenCacheEntry.__table__.columns

    def test_filename(self):
        assert MavenCacheEntry(relative_path="com/acme/lib-1.0.jar").filename == "lib-1.0.jar"
        assert MavenCacheEntry(relative_path="").filename is None


class TestRelationships:
    def test_mappers_configure_without_warnings(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            configure_mappers()

    def test_registry_side_does_not_shadow_declarative_registry(self):
        assert "virtual_registry" in inspect(RegistryUpstream).relationships
        assert "virtual_registry" in inspect(CleanupPolicy).relationships
        assert "registry" not in inspect(RegistryUpstream).relationships
        assert inspect(Registry).relationships["cleanup_policy"].back_populates == "virtual_registry"


def test_uuid7_is_version_7_and_sortable():
    first = generate_uuid7()
    second = generate_uuid7()
    assert first.version == 7
    assert first.bytes[:6] <= second.bytes[:6]


class TestErrorClassification:
    def test_unique_violation(self):
        exc = _integrity_error(_DriverError("23505", "uq_virtual_registries_group_name"))
        assert is_unique_violation(exc)
        assert violated_constraint(exc) == "uq_virtual_registries_group_name"

    def test_other_integrity_errors(self):
        assert not is_unique_violation(_integrity_error(_DriverError("23503")))
        assert not is_unique_violation(_integrity_error(_DriverError()))

    def test_sqlstate_on_wrapped_cause(self):
        # The asyncpg dialect wraps the driver exception; the SQLSTATE sits on its cause
        wrapper = Exception("wrapped")
        wrapper.__cause__ = _DriverError("23505", "uq_x")
        exc = _integrity_error(wrapper)
        assert is_unique_violation(exc)
        assert violated_constraint(exc) == "uq_x"

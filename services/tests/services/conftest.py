"""
Shared fixtures for service-layer tests.

Database sessions are AsyncMock(spec=AsyncSession); query results are
MagicMocks shaped like SQLAlchemy results.
"""

import uuid
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vregistry.db.models import Registry, Upstream
from vregistry.services.encryption_service import init_encryption


class FakeDriverError(Exception):
    """Stands in for an asyncpg error carrying a SQLSTATE."""

    def __init__(self, sqlstate: str, constraint_name: str | None = None) -> None:
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate
        self.constraint_name = constraint_name


def integrity_error(sqlstate: str = "23505", constraint_name: str | None = None) -> IntegrityError:
    return IntegrityError("INSERT ...", {}, FakeDriverError(sqlstate, constraint_name))


@pytest.fixture
def make_integrity_error() -> Callable[..., IntegrityError]:
    return integrity_error


@pytest.fixture
def mock_db():
    db = AsyncMock(spec=AsyncSession)
    db.info = {}
    return db


@pytest.fixture
def make_result() -> Callable[..., MagicMock]:
    def _make(scalar=None, scalars=None, rowcount=None) -> MagicMock:
        result = MagicMock()
        result.scalar_one_or_none.return_value = scalar
        result.scalar_one.return_value = scalar
        result.scalars.return_value.all.return_value = scalars if scalars is not None else []
        result.rowcount = rowcount
        return result

    return _make


@pytest.fixture
def encryption():
    init_encryption(Fernet.generate_key().decode())
    yield
    init_encryption("")


@pytest.fixture
def make_upstream() -> Callable[..., Upstream]:
    def _make(**overrides) -> Upstream:
        values = {
            "id": uuid.uuid4(),
            "group_id": 42,
            "package_type": "maven",
            "name": "acme",
            "url": "https://repo.example.com/maven2",
            "cache_validity_hours": 24,
        }
        values.update(overrides)
        return Upstream(**values)

    return _make


@pytest.fixture
def make_registry() -> Callable[..., Registry]:
    def _make(**overrides) -> Registry:
        values = {
            "id": uuid.uuid4(),
            "group_id": 42,
            "package_type": "maven",
            "name": "maven-virtual",
        }
        values.update(overrides)
        return Registry(**values)

    return _make


@pytest.fixture
def mock_http():
    """Patch target factory: a client whose requests are answered by `handler`."""

    def _make(handler):
        return lambda timeout: httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make

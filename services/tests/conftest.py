"""
Top-level test configuration for vregistry.
"""

import os
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure test-friendly defaults
os.environ.setdefault("VREGISTRY_STORAGE__BACKEND", "filesystem")
os.environ.setdefault("VREGISTRY_JSON_LOGS", "false")
os.environ.setdefault("VREGISTRY_LOG_LEVEL", "DEBUG")
# Tests use documentation hostnames that do not resolve
os.environ.setdefault("VREGISTRY_VIRTUAL_REGISTRIES__VERIFY_UPSTREAM_DNS", "false")


@pytest.fixture
def mock_redis():
    """Async Redis client whose pipeline() is reachable as mock_redis.pipeline.return_value."""
    redis = AsyncMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    redis.pipeline = MagicMock(return_value=pipe)
    return redis


@pytest.fixture
def session_factory():
    """Build a get_db_session replacement that yields the given mock session."""

    def _factory(db):
        @asynccontextmanager
        async def _session():
            yield db

        return _session

    return _factory

import os

# Settings() is built at import time and requires these.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./directory-test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("ENV", "test")

import pytest

from app.core.security import Actor, Role
from app.core.tenant_db import TenantDatabaseRegistry
from app.models.tenant import TenantLocator
from app.services.locks import KeyedLocks
from tests.factories import TENANT_ID, RecordingSink, sqlite_locator


@pytest.fixture
async def registry():
    registry = TenantDatabaseRegistry(connect_timeout=5, liveness_interval=30, auto_create_schema=True)
    yield registry
    await registry.close_all()


@pytest.fixture
def locator(tmp_path) -> TenantLocator:
    return sqlite_locator(tmp_path / "tenant_a.db")


@pytest.fixture
async def connection(registry, locator):
    return await registry.get_connection(locator)


@pytest.fixture
def actor() -> Actor:
    return Actor(user_id="staff-1", name="Front Desk", role=Role.STAFF, tenant_id=TENANT_ID)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()

import asyncio
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["MONGODB_TRANSACTIONS"] = "false"

from fastapi.testclient import TestClient  # noqa: E402
from mongomock_motor import AsyncMongoMockClient  # noqa: E402

from auth import create_access_token  # noqa: E402
from database import Database, get_database  # noqa: E402
from main import app  # noqa: E402

from helpers import create_user  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db() -> Database:
    """A fresh in-memory database with the production indexes."""
    database = Database(name="pemiyos_test", transactions=False, client=AsyncMongoMockClient())
    asyncio.run(database.ensure_indexes())
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_database] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _headers_for(user) -> dict:
    token = create_access_token({"sub": str(user["_id"]), "nis": user["nis"], "role": user["role"]})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_user(db):
    return asyncio.run(create_user(db, nis="admin", role="admin"))


@pytest.fixture
def voter_user(db):
    return asyncio.run(create_user(db, nis="100001"))


@pytest.fixture
def admin_headers(admin_user):
    return _headers_for(admin_user)


@pytest.fixture
def voter_headers(voter_user):
    return _headers_for(voter_user)

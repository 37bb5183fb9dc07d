"""
Pytest configuration and shared fixtures

- In-memory MongoDB (mongomock-motor) with the production indexes
- httpx AsyncClient bound to the FastAPI app with get_database overridden
- User factories and bearer headers
"""
import os

os.environ["RENDER"] = "true"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["DATABASE_NAME"] = "transcriber_test"

import uuid
from datetime import datetime

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from mongomock_motor import AsyncMongoMockClient

from app.auth.jwt_handler import create_access_token
from app.database.connection import create_indexes, get_database

WEBHOOK_SECRET = "whsec_test_secret"


@pytest_asyncio.fixture
async def db():
    """Fresh database per test, indexed like production"""
    client = AsyncMongoMockClient()
    database = client[f"transcriber_{uuid.uuid4().hex[:8]}"]
    await create_indexes(database)
    yield database


@pytest_asyncio.fixture
async def client(db, monkeypatch):
    """
    Async test client for the FastAPI app

    ASGITransport does not run the lifespan, so no real MongoDB
    connection or scheduler is started. The webhook looks its database
    up after signature verification, so its lookup is patched as well.
    """
    from main import app

    async def webhook_database():
        return db

    app.dependency_overrides[get_database] = lambda: db
    monkeypatch.setattr("app.payments.routes.get_database", webhook_database)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Insert a user and return its id as a string"""

    async def _make_user(tokens: int = 0, is_admin: bool = False, **fields) -> str:
        now = datetime.utcnow()
        document = {
            "email": fields.pop("email", f"{uuid.uuid4().hex[:10]}@example.com"),
            "name": "Test User",
            "tokens": tokens,
            "isAdmin": is_admin,
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
            **fields
        }
        result = await db.users.insert_one(document)
        return str(result.inserted_id)

    return _make_user


def auth_headers(user_id: str) -> dict:
    """Bearer header for `user_id`"""
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def headers_for():
    return auth_headers

import os
import uuid
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Test settings; must be set before get_settings() is first called
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "advisor_credits_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec-test")
os.environ.setdefault("INTERNAL_SERVICE_TOKEN", "internal-test-token")

WEBHOOK_SECRET = os.environ["RAZORPAY_WEBHOOK_SECRET"]
INTERNAL_TOKEN = os.environ["INTERNAL_SERVICE_TOKEN"]


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test, with Beanie bound to it."""
    from advisor_credits.db.init import init_db
    client = AsyncMongoMockClient()
    database = client[f"test_{uuid.uuid4().hex}"]
    await init_db(database)
    yield database


@pytest_asyncio.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    from advisor_credits.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


def advisor_headers(advisor_id: str, role: str = "advisor") -> dict[str, str]:
    from advisor_credits.core.security import create_session_cookie
    cookie = create_session_cookie({"user_id": advisor_id, "role": role})
    return {"Cookie": f"advisor_session={cookie}"}

import asyncio
import os
from datetime import datetime, timedelta, timezone

os.environ.pop("REDIS_URL", None)
os.environ.setdefault("JWT_SECRET", "memoria-test-secret-0123456789abcdef")

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from memoria_dm.client.api import MessagingClient
from memoria_dm.database.connection import mongo_db_dependency
from memoria_dm.main import app as fastapi_app
from memoria_dm.repositories.message_repository import MessageRepository
from memoria_dm.repositories.user_repository import UserRepository
from memoria_dm.utils.security import create_access_token


BASE_URL = "http://testserver"


class StepClock:
    """Clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class GatedTransport(httpx.AsyncBaseTransport):
    """Holds requests of one method until ``gate`` is set."""

    def __init__(self, inner: httpx.AsyncBaseTransport, method: str = "POST") -> None:
        self.inner = inner
        self.method = method
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.calls = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path))
        if request.method == self.method:
            self.entered.set()
            await self.gate.wait()
        return await self.inner.handle_async_request(request)


@pytest.fixture
def db():
    return AsyncMongoMockClient()["memoria_test"]


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def message_repo(db, clock):
    return MessageRepository(db, clock=clock)


@pytest.fixture
def user_repo(db):
    return UserRepository(db)


async def create_user(db, username, full_name=None, avatar_url=None):
    # profiles are written by the external profile system; tests seed them directly
    result = await db["users"].insert_one({"username": username, "full_name": full_name, "avatar_url": avatar_url})
    return str(result.inserted_id)


@pytest.fixture
async def users(db):
    return {
        "alice": await create_user(db, "alice", "Alice Martin", "https://cdn.example/alice.png"),
        "bob": await create_user(db, "bob", "Bob Stone"),
        "carol": await create_user(db, "carol"),
    }


@pytest.fixture
def app(db):
    fastapi_app.dependency_overrides[mongo_db_dependency] = lambda: db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def transport(app):
    return httpx.ASGITransport(app=app)


@pytest.fixture
async def http(transport):
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
        yield client


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
async def make_client(transport):
    clients = []

    def _make(user_id: str, inner: httpx.AsyncBaseTransport = None, timeout: float = 5.0) -> MessagingClient:
        client = MessagingClient(BASE_URL, create_access_token(user_id), timeout=timeout, transport=inner or transport)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()

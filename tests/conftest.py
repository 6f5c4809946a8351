from __future__ import annotations
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("AUTH_JWKS_URL", "http://auth.test/.well-known/jwks.json")
os.environ.setdefault("QR_SECRET", "test-event-secret")
os.environ.setdefault("RL_ENABLED", "false")

from typing import Any, Dict, List

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.broadcast import LocalConnectionRegistry
from app.db import build_engine
from app.models import Attendee, Base

STAFF_ID = "staff-0001"

class RecordingRegistry(LocalConnectionRegistry):
    def __init__(self) -> None:
        super().__init__()
        self.sent: List[Dict[str, Any]] = []

    async def broadcast(self, flt, payload):
        self.sent.append(payload)
        await super().broadcast(flt, payload)

class FakeSocket:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: List[Any] = []

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(data)

@pytest.fixture
async def session_maker():
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()

@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session

@pytest.fixture
def make_attendee(session_maker):
    counter = {"n": 0}

    async def _make(**overrides) -> Attendee:
        counter["n"] += 1
        n = counter["n"]
        fields = {
            "unique_id": f"ATT-{n:08d}",
            "email": f"attendee{n}@example.com",
            "name": f"Attendee {n}",
        }
        fields.update(overrides)
        async with session_maker() as s:
            obj = Attendee(**fields)
            s.add(obj)
            await s.commit()
            await s.refresh(obj)
            return obj
    return _make

@pytest.fixture
def registry():
    return RecordingRegistry()

@pytest.fixture
def staff_claims():
    return {"sub": STAFF_ID, "role": "staff"}

@pytest.fixture
async def client(session_maker, registry, staff_claims):
    from app.main import app
    from app.deps import get_db, get_claims, get_connection_registry

    async def _db():
        async with session_maker() as s:
            yield s

    claims = dict(staff_claims)
    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_claims] = lambda: claims
    app.dependency_overrides[get_connection_registry] = lambda: registry
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        c.claims = claims  # tests may switch role/sub
        yield c
    app.dependency_overrides.clear()

@pytest.fixture(autouse=True)
def nonce_store(monkeypatch):
    used: set[str] = set()

    async def _consume(key: str, ttl_seconds: int) -> bool:
        if key in used:
            return False
        used.add(key)
        return True

    async def _release(key: str) -> None:
        used.discard(key)

    monkeypatch.setattr("app.routers.checkins.consume_nonce", _consume)
    monkeypatch.setattr("app.routers.checkins.release_nonce", _release)
    return used

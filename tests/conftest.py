"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, HTTP client against the real
app, users/workers, and a local realtime fan-out with fake sessions.
"""

import os

# Settings are read at import time; configure before importing the app.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-not-for-production"
os.environ["FANOUT_BACKEND"] = "local"
os.environ.setdefault("APP_ENV", "test")

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from config.database import Base, get_db  # noqa: E402
from main import app  # noqa: E402
from services.notification.fanout import (  # noqa: E402
    RealtimeFanout,
    SessionRegistry,
    get_fanout,
)
from shared.models.models import (  # noqa: E402
    ServiceCategory,
    User,
    UserRole,
    WorkerAvailability,
    WorkerProfile,
)
from shared.utils.security import create_access_token  # noqa: E402


# ── Helpers (imported by test modules) ────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


def future_date(days: int = 1) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def booking_payload(worker: WorkerProfile, **overrides) -> dict:
    payload = {
        "worker_id": str(worker.id),
        "description": "Kitchen sink is leaking",
        "booking_date": future_date(),
        "service_category": "plumber",
        "address": "12 Elm Street, Springfield",
        "latitude": 39.7817,
        "longitude": -89.6501,
        "estimated_hours": "2",
        "estimated_price": "80.00",
    }
    payload.update(overrides)
    return payload


async def make_user(db: AsyncSession, name: str, role: UserRole) -> User:
    user = User(
        name=name,
        email=f"{name.lower().replace(' ', '.')}@example.com",
        phone="+15550100",
        role=role,
    )
    db.add(user)
    await db.commit()
    return user


async def make_worker(
    db: AsyncSession,
    name: str,
    latitude: Optional[float] = 39.7817,
    longitude: Optional[float] = -89.6501,
    **fields,
) -> WorkerProfile:
    user = await make_user(db, name, UserRole.WORKER)
    profile = WorkerProfile(
        user_id=user.id,
        service_category=fields.pop("service_category", ServiceCategory.PLUMBER),
        hourly_rate=fields.pop("hourly_rate", Decimal("40.00")),
        availability=fields.pop("availability", WorkerAvailability.AVAILABLE),
        latitude=latitude,
        longitude=longitude,
        city=fields.pop("city", "Springfield"),
        state=fields.pop("state", "IL"),
        **fields,
    )
    db.add(profile)
    await db.commit()
    return profile


async def reload(db: AsyncSession, model, pk):
    """Fresh copy of a row as committed by the app."""
    return await db.get(model, pk, populate_existing=True)


class FakeSession:
    """Stands in for a WebSocket: records JSON messages or fails on send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(message)

    def events(self) -> list:
        return [m["event"] for m in self.messages]


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ── Realtime ──────────────────────────────────────────────────

@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def fanout(registry) -> RealtimeFanout:
    return RealtimeFanout(registry, backend="local", timeout=1.0)


# ── HTTP client ───────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(session_factory, fanout):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_fanout] = lambda: fanout
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Users ─────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def homeowner(db_session) -> User:
    return await make_user(db_session, "Hannah Homeowner", UserRole.HOMEOWNER)


@pytest_asyncio.fixture
async def other_homeowner(db_session) -> User:
    return await make_user(db_session, "Oscar Other", UserRole.HOMEOWNER)


@pytest_asyncio.fixture
async def worker_profile(db_session) -> WorkerProfile:
    return await make_worker(db_session, "Walter Worker")


@pytest_asyncio.fixture
async def worker_user(db_session, worker_profile) -> User:
    return await db_session.get(User, worker_profile.user_id)

import json
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from services.creem import compute_signature


TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_USER_ID = "billing-user"
TEST_USER_EMAIL = "billing@example.com"


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def creem_settings(monkeypatch):
    monkeypatch.setattr(settings, "CREEM_API_KEY", "creem_test_key")
    monkeypatch.setattr(settings, "CREEM_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "WEBHOOK_DEDUP_ENABLED", True)
    monkeypatch.setattr(settings, "REGISTRATION_BONUS_CREDITS", 0)
    monkeypatch.setattr(settings, "AUTH_SYNC_SECRET", "")


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with maker() as session:
        session.add(User(id=TEST_USER_ID, email=TEST_USER_EMAIL))
        await session.commit()

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.pop(get_db, None)


def checkout_event(
    plan_id: str,
    *,
    email: str = TEST_USER_EMAIL,
    event_type: str = "checkout.completed",
    checkout_id: str = "ch_1",
    transaction_id: Optional[str] = "tran_1",
    amount_paid: Optional[int] = None,
    order_type: Optional[str] = None,
    subscription: Optional[Dict[str, Any]] = None,
) -> str:
    """Serialize a Creem checkout event the way the processor delivers it."""
    order: Dict[str, Any] = {"id": f"ord_{checkout_id}", "currency": "USD"}
    if transaction_id is not None:
        order["transaction"] = transaction_id
    if amount_paid is not None:
        order["amount_paid"] = amount_paid
    if order_type is not None:
        order["type"] = order_type

    body: Dict[str, Any] = {
        "id": f"evt_{checkout_id}",
        "eventType": event_type,
        "object": {
            "id": checkout_id,
            "customer": {"email": email},
            "product": {"id": plan_id},
            "order": order,
        },
    }
    if subscription is not None:
        body["object"]["subscription"] = subscription
    return json.dumps(body)


def sign(payload: str, secret: str = TEST_WEBHOOK_SECRET) -> str:
    return compute_signature(payload, secret)

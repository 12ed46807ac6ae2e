"""
Pytest configuration and fixtures.

Each test runs against its own SQLite database file, so the suite needs
neither PostgreSQL nor Redis. The gateway and Redis are mocked.
"""
import os

os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake_key_for_testing"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_fake_secret"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["APP_ENV"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["PAYMENTS_ENABLED"] = "true"
os.environ["PUBLIC_BASE_URL"] = "https://problem2profit.test"
os.environ["TRANSACTION_RETRY_BASE_DELAY"] = "0.001"

import hashlib  # noqa: E402
import hmac  # noqa: E402
import json  # noqa: E402
import time  # noqa: E402
from typing import Any, AsyncGenerator, Dict, Optional  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from problem2profit.core.checkout import CheckoutService  # noqa: E402
from problem2profit.core.content import ContentService  # noqa: E402
from problem2profit.core.deals import DealTransactionService  # noqa: E402
from problem2profit.core.integrity import IntegrityChecker  # noqa: E402
from problem2profit.core.membership import MembershipService  # noqa: E402
from problem2profit.core.notifications import NotificationService  # noqa: E402
from problem2profit.core.side_effects import SideEffectDispatcher  # noqa: E402
from problem2profit.core.transactions import TransactionRunner  # noqa: E402
from problem2profit.core.upvotes import UpvoteToggleService  # noqa: E402
from problem2profit.database.connection import create_session_factory  # noqa: E402
from problem2profit.database.models import Base, ContentItem, UserProfile  # noqa: E402
from problem2profit.integrations.stripe_client import StripeClient  # noqa: E402
from problem2profit.integrations.webhook_handler import WebhookHandler  # noqa: E402

CHECKOUT_URL = "https://checkout.stripe.com/c/pay/cs_test_123"
PROBLEM_TITLE = "Cold chain for rural clinics"

USERS = [
    {"id": "inv1", "name": "Ada Investor", "role": "Investor", "expertise": "Health"},
    {"id": "pc1", "name": "Pat Creator", "role": "User", "expertise": "Logistics"},
    {"id": "sc1", "name": "Sam Solver", "role": "User", "expertise": "Engineering"},
    {"id": "u1", "name": "Uma", "role": "User", "expertise": ""},
    {"id": "u2", "name": "Vic", "role": "User", "expertise": ""},
    {"id": "admin1", "name": "Alex Admin", "role": "Admin", "expertise": ""},
]


def _reference(user: Dict[str, str]) -> Dict[str, str]:
    return {
        "userId": user["id"],
        "name": user["name"],
        "avatarUrl": "",
        "expertise": user["expertise"],
    }


async def seed_marketplace(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Insert the users and items every test starts from."""
    by_id = {u["id"]: u for u in USERS}
    async with session_factory() as db:
        async with db.begin():
            for user in USERS:
                db.add(
                    UserProfile(
                        id=user["id"],
                        email=f"{user['id']}@example.com",
                        name=user["name"],
                        role=user["role"],
                        expertise=user["expertise"],
                    )
                )
            db.add_all(
                [
                    ContentItem(
                        id="prob1",
                        item_type="problem",
                        title=PROBLEM_TITLE,
                        description="Vaccines spoil before they reach villages.",
                        tags=["health", "logistics"],
                        creator_id="pc1",
                        creator=_reference(by_id["pc1"]),
                        solutions_count=1,
                    ),
                    ContentItem(
                        id="sol1",
                        item_type="solution",
                        title=PROBLEM_TITLE,
                        description="Solar powered cooling boxes.",
                        tags=[],
                        creator_id="sc1",
                        creator=_reference(by_id["sc1"]),
                        problem_id="prob1",
                    ),
                    ContentItem(
                        id="idea1",
                        item_type="idea",
                        title="Peer-to-peer tool library",
                        tags=[],
                        creator_id="u2",
                        creator=_reference(by_id["u2"]),
                    ),
                    ContentItem(
                        id="biz1",
                        item_type="business",
                        title="Neighbourhood bakery",
                        tags=[],
                        creator_id="u2",
                        creator=_reference(by_id["u2"]),
                        stage="Revenue",
                    ),
                ]
            )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory bound to a fresh, seeded SQLite database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'problem2profit.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = create_session_factory(engine)
    await seed_marketplace(factory)

    yield factory

    await engine.dispose()


@pytest.fixture
def runner(session_factory: async_sessionmaker[AsyncSession]) -> TransactionRunner:
    """Transaction runner with a short backoff and room for SQLite lock retries."""
    return TransactionRunner(
        session_factory=session_factory,
        max_attempts=10,
        timeout_seconds=30,
        base_delay_seconds=0.01,
    )


@pytest.fixture
def dispatcher(session_factory: async_sessionmaker[AsyncSession]) -> SideEffectDispatcher:
    return SideEffectDispatcher(session_factory=session_factory)


@pytest.fixture
def deal_service(
    session_factory: async_sessionmaker[AsyncSession],
    runner: TransactionRunner,
    dispatcher: SideEffectDispatcher,
) -> DealTransactionService:
    return DealTransactionService(session_factory=session_factory, runner=runner, dispatcher=dispatcher)


@pytest.fixture
def upvote_service(
    session_factory: async_sessionmaker[AsyncSession],
    runner: TransactionRunner,
    dispatcher: SideEffectDispatcher,
) -> UpvoteToggleService:
    return UpvoteToggleService(session_factory=session_factory, runner=runner, dispatcher=dispatcher)


@pytest.fixture
def content_service(
    session_factory: async_sessionmaker[AsyncSession],
    runner: TransactionRunner,
    dispatcher: SideEffectDispatcher,
) -> ContentService:
    return ContentService(session_factory=session_factory, runner=runner, dispatcher=dispatcher)


@pytest.fixture
def membership_service(
    session_factory: async_sessionmaker[AsyncSession], runner: TransactionRunner
) -> MembershipService:
    return MembershipService(session_factory=session_factory, runner=runner)


@pytest.fixture
def notification_service(session_factory: async_sessionmaker[AsyncSession]) -> NotificationService:
    return NotificationService(session_factory=session_factory)


@pytest.fixture
def integrity_checker(session_factory: async_sessionmaker[AsyncSession]) -> IntegrityChecker:
    return IntegrityChecker(session_factory=session_factory)


@pytest.fixture
def mock_stripe_client() -> AsyncMock:
    """Stripe client whose checkout sessions always succeed."""
    client = AsyncMock(spec=StripeClient)
    client.create_checkout_session.return_value = CHECKOUT_URL
    return client


@pytest.fixture
def checkout_service(
    deal_service: DealTransactionService,
    membership_service: MembershipService,
    mock_stripe_client: AsyncMock,
) -> CheckoutService:
    return CheckoutService(deal_service, membership_service, stripe_client=mock_stripe_client)


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Redis client that has never seen any webhook event."""
    redis = AsyncMock()
    redis.exists.return_value = 0
    return redis


@pytest.fixture
def webhook_handler(
    deal_service: DealTransactionService,
    membership_service: MembershipService,
    mock_redis: AsyncMock,
) -> WebhookHandler:
    return WebhookHandler(deal_service, membership_service, redis_client=mock_redis)


@pytest_asyncio.fixture
async def investor(session_factory: async_sessionmaker[AsyncSession]) -> UserProfile:
    """The seeded investor profile."""
    async with session_factory() as db:
        return await db.get(UserProfile, "inv1")


@pytest_asyncio.fixture
async def client(
    deal_service: DealTransactionService,
    upvote_service: UpvoteToggleService,
    content_service: ContentService,
    membership_service: MembershipService,
    notification_service: NotificationService,
    checkout_service: CheckoutService,
    webhook_handler: WebhookHandler,
    integrity_checker: IntegrityChecker,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app with every service bound to the test database."""
    from problem2profit.api import dependencies
    from problem2profit.api.main import app

    app.dependency_overrides.update(
        {
            dependencies.get_deal_service: lambda: deal_service,
            dependencies.get_upvote_service: lambda: upvote_service,
            dependencies.get_content_service: lambda: content_service,
            dependencies.get_membership_service: lambda: membership_service,
            dependencies.get_notification_service: lambda: notification_service,
            dependencies.get_checkout_service: lambda: checkout_service,
            dependencies.get_webhook_handler: lambda: webhook_handler,
            dependencies.get_integrity_checker: lambda: integrity_checker,
        }
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def deal_metadata(**overrides: Optional[str]) -> Dict[str, str]:
    """Checkout metadata for a paid deal on the seeded problem."""
    metadata = {
        "type": "deal_creation",
        "investorId": "inv1",
        "primaryCreatorId": "pc1",
        "itemId": "prob1",
        "itemTitle": PROBLEM_TITLE,
        "itemType": "problem",
        "amount": "75000",
    }
    metadata.update(overrides)
    return {k: v for k, v in metadata.items() if v is not None}


def checkout_completed_event(event_id: str, metadata: Dict[str, str]) -> str:
    """Serialized ``checkout.session.completed`` event."""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_123",
                    "object": "checkout.session",
                    "metadata": metadata,
                }
            },
        }
    )


class FailingNotificationService(NotificationService):
    """Notification sink that is always down."""

    async def notify(self, db: Any, user_id: str, message: str, link: str) -> None:
        raise RuntimeError("notification store unavailable")


def sign_payload(payload: str, secret: str = "whsec_test_fake_secret") -> str:
    """Build a ``Stripe-Signature`` header for a payload."""
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"

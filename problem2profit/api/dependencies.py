"""
FastAPI dependency providers.

Services are built once per process on first use. Tests replace them through
``app.dependency_overrides``.
"""
from functools import lru_cache

from fastapi import Depends, Header

from problem2profit.core.checkout import CheckoutService
from problem2profit.core.content import ContentService
from problem2profit.core.deals import DealTransactionService
from problem2profit.core.exceptions import PermissionDeniedError
from problem2profit.core.integrity import IntegrityChecker
from problem2profit.core.membership import MembershipService
from problem2profit.core.notifications import NotificationService
from problem2profit.core.types import ADMIN_ROLE
from problem2profit.core.upvotes import UpvoteToggleService
from problem2profit.database.models import UserProfile
from problem2profit.integrations.webhook_handler import WebhookHandler
from problem2profit.monitoring.health import HealthCheck


@lru_cache()
def get_deal_service() -> DealTransactionService:
    return DealTransactionService()


@lru_cache()
def get_upvote_service() -> UpvoteToggleService:
    return UpvoteToggleService()


@lru_cache()
def get_content_service() -> ContentService:
    return ContentService()


@lru_cache()
def get_membership_service() -> MembershipService:
    return MembershipService()


@lru_cache()
def get_notification_service() -> NotificationService:
    return NotificationService()


@lru_cache()
def get_checkout_service() -> CheckoutService:
    return CheckoutService(get_deal_service(), get_membership_service())


@lru_cache()
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler(get_deal_service(), get_membership_service())


@lru_cache()
def get_integrity_checker() -> IntegrityChecker:
    return IntegrityChecker()


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()


async def get_current_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    """Authenticated user id, set by the identity gateway in front of the API."""
    return x_user_id


async def get_current_admin_id(
    user_id: str = Depends(get_current_user_id),
    checker: IntegrityChecker = Depends(get_integrity_checker),
) -> str:
    """Authenticated user id, rejected unless the user is an admin."""
    async with checker.session_factory() as db:
        user = await db.get(UserProfile, user_id)
    if user is None or user.role != ADMIN_ROLE:
        raise PermissionDeniedError(f"User {user_id} is not an admin")
    return user_id

"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification
- Event deduplication using Redis
- ``checkout.session.completed`` routing by metadata ``type``
  (``deal_creation`` or ``membership``)
- Reconciliation reporting when a paid deal cannot be created
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog

from problem2profit.config import get_settings
from problem2profit.core.deals import DealTransactionService
from problem2profit.core.exceptions import (
    InvalidRequestError,
    NotFoundError,
    Problem2ProfitError,
    ReconciliationRequiredError,
)
from problem2profit.core.membership import MembershipService
from problem2profit.database.models import UserProfile
from problem2profit.integrations.stripe_client import StripeClient
from problem2profit.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"

DEAL_METADATA_FIELDS = ("investorId", "primaryCreatorId", "itemId", "itemTitle", "itemType", "amount")
MEMBERSHIP_METADATA_FIELDS = ("userId", "plan", "paymentFrequency", "amount")


class WebhookError(Exception):
    """Raised when webhook processing fails."""

    pass


class WebhookSignatureError(WebhookError):
    """The payload could not be verified against the webhook secret."""

    pass


def _parse_amount(raw: str) -> int:
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        raise InvalidRequestError(f"Invalid amount in webhook metadata: {raw!r}")


class WebhookHandler:
    """
    Handles Stripe webhook events with deduplication and processing.

    Features:
    - Signature verification using Stripe webhook secrets
    - Event deduplication (processed event ids kept in Redis)
    - Event type routing to registered handlers
    """

    def __init__(
        self,
        deal_service: DealTransactionService,
        membership_service: MembershipService,
        redis_client: Optional[aioredis.Redis] = None,
        stripe_client: Optional[StripeClient] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            deal_service: Service creating deals for paid checkouts
            membership_service: Service upgrading memberships
            redis_client: Optional Redis client for event deduplication
            stripe_client: Optional Stripe client for signature verification
        """
        self.settings = get_settings()
        self.deal_service = deal_service
        self.membership_service = membership_service
        self.redis_client = redis_client
        self._owns_redis = False
        self._stripe_client = stripe_client
        self.event_handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {}

        self.register_handler(CHECKOUT_COMPLETED, self.handle_checkout_completed)
        logger.info("webhook_handler_initialized")

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    def register_handler(
        self,
        event_type: str,
        handler: Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]],
    ) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'checkout.session.completed')
            handler: Async callable receiving the event's data object
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, payload: bytes, signature: str) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            WebhookSignatureError: If signature verification fails
        """
        try:
            event = self.stripe_client.construct_event(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            logger.error("webhook_verification_error", error=str(e))
            raise WebhookSignatureError(f"Webhook verification failed: {e}") from e

        logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
        return event

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Args:
            event_id: Stripe event ID

        Returns:
            bool: True if event already processed, False otherwise
        """
        try:
            redis = await self._ensure_redis()
            exists = await redis.exists(f"webhook:processed:{event_id}")
            return bool(exists)
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # If Redis is down, process the event anyway; deal creation is idempotent
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        """Remember a processed event id for the configured TTL."""
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                f"webhook:processed:{event_id}", self.settings.webhook_dedup_ttl_seconds, "1"
            )
            logger.info("webhook_marked_processed", event_id=event_id)
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(
        self, event_id: str, event_type: str, data_object: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Args:
            event_id: Stripe event ID
            event_type: Stripe event type
            data_object: The event's ``data.object``

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            Problem2ProfitError: Domain failure (bad metadata, reconciliation)
            WebhookError: Any other processing failure
        """
        start = time.monotonic()
        logger.info("processing_webhook_event", event_id=event_id, event_type=event_type)

        if await self.is_event_processed(event_id):
            logger.info("webhook_event_already_processed", event_id=event_id, event_type=event_type)
            metrics.record_webhook_event(event_type, "duplicate", time.monotonic() - start)
            return {"status": "duplicate", "event_id": event_id}

        handler = self.event_handlers.get(event_type)
        if handler is None:
            metrics.record_webhook_event(event_type, "ignored", time.monotonic() - start)
            return {"status": "ignored", "event_id": event_id, "event_type": event_type}

        try:
            result = await handler(data_object)
        except Problem2ProfitError as e:
            metrics.record_webhook_event(event_type, "failed", time.monotonic() - start)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=e.message,
            )
            raise
        except Exception as e:
            metrics.record_webhook_event(event_type, "failed", time.monotonic() - start)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            raise WebhookError(f"Failed to process event {event_id}: {e}") from e

        await self.mark_event_processed(event_id)
        metrics.record_webhook_event(event_type, "success", time.monotonic() - start)
        logger.info("webhook_event_processed_successfully", event_id=event_id, event_type=event_type)
        return {"status": "success", "event_id": event_id, "event_type": event_type, "result": result}

    async def handle_checkout_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        """
        Route a completed checkout by its metadata ``type``.

        Raises:
            InvalidRequestError: The session carries no metadata
        """
        metadata = session.get("metadata") or {}
        if not metadata:
            raise InvalidRequestError("Webhook received without metadata")

        checkout_type = metadata.get("type")
        if checkout_type == "deal_creation":
            return await self.handle_deal_creation(metadata)
        if checkout_type == "membership":
            return await self.handle_membership(metadata)

        logger.warning("webhook_unknown_checkout_type", checkout_type=checkout_type)
        return {"status": "ignored", "checkout_type": checkout_type}

    async def handle_deal_creation(self, metadata: Dict[str, str]) -> Dict[str, Any]:
        """
        Create the deal paid for by a completed checkout.

        The payment is already captured, so any failure here is reported as
        ``ReconciliationRequiredError``.
        """
        try:
            missing = [f for f in DEAL_METADATA_FIELDS if not metadata.get(f)]
            if missing:
                raise InvalidRequestError(
                    f"Incomplete metadata for deal creation: missing {', '.join(missing)}"
                )
            amount = _parse_amount(metadata["amount"])

            existing = await self.deal_service.find_existing_deal(
                metadata["itemId"], metadata["investorId"]
            )
            if existing is not None:
                logger.info("webhook_deal_already_exists", deal_id=existing)
                return {"deal_id": existing, "existing": True}

            async with self.deal_service.session_factory() as db:
                investor = await db.get(UserProfile, metadata["investorId"])
            if investor is None:
                raise NotFoundError("Investor", metadata["investorId"])

            deal_id = await self.deal_service.create_deal(
                investor,
                metadata["primaryCreatorId"],
                metadata["itemId"],
                metadata["itemTitle"],
                metadata["itemType"],
                amount,
                metadata.get("solutionCreatorId") or None,
            )
            return {"deal_id": deal_id, "existing": False}

        except Exception as e:
            metrics.record_reconciliation_required("deal")
            logger.error(
                "deal_creation_after_payment_failed",
                requires_reconciliation=True,
                investor_id=metadata.get("investorId"),
                item_id=metadata.get("itemId"),
                amount=metadata.get("amount"),
                error=str(e),
            )
            raise ReconciliationRequiredError(
                f"Payment captured but deal creation failed: {e}",
                investor_id=metadata.get("investorId"),
                item_id=metadata.get("itemId"),
            ) from e

    async def handle_membership(self, metadata: Dict[str, str]) -> Dict[str, Any]:
        """
        Upgrade the membership paid for by a completed checkout.

        As with deals, the payment is already captured, so any failure here is
        reported as ``ReconciliationRequiredError``.
        """
        try:
            missing = [f for f in MEMBERSHIP_METADATA_FIELDS if not metadata.get(f)]
            if missing:
                raise InvalidRequestError(
                    f"Incomplete metadata for membership purchase: missing {', '.join(missing)}"
                )
            await self.membership_service.upgrade_membership(
                metadata["userId"],
                metadata["plan"],
                metadata["paymentFrequency"],
                _parse_amount(metadata["amount"]),
            )
            return {"user_id": metadata["userId"], "plan": metadata["plan"]}

        except Exception as e:
            metrics.record_reconciliation_required("membership")
            logger.error(
                "membership_upgrade_after_payment_failed",
                requires_reconciliation=True,
                user_id=metadata.get("userId"),
                plan=metadata.get("plan"),
                amount=metadata.get("amount"),
                error=str(e),
            )
            raise ReconciliationRequiredError(
                f"Payment captured but membership upgrade failed: {e}",
                purchase="membership",
                user_id=metadata.get("userId"),
            ) from e

    async def close(self) -> None:
        """Close the Redis connection if this handler opened it."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()

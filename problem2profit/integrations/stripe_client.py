"""
Stripe API client with retry logic and error classification.

Implements:
- Checkout Session creation for deals and memberships
- Exponential backoff for transient errors
- Circuit breaker pattern
- Webhook signature verification
"""
import asyncio
import time
from enum import Enum
from typing import Any, Dict, Optional

import stripe
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from problem2profit.config import get_settings
from problem2profit.core.exceptions import PaymentGatewayError

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Classified Stripe failure."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.error_type is not StripeErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Stops calling Stripe for ``timeout`` seconds after ``failure_threshold``
    consecutive failures, then lets calls through again in half-open state.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Check whether a call may proceed.

        Raises:
            StripeError: If the circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self.state = "half_open"
            self.success_count = 0
            logger.info("circuit_breaker_half_open")
            return
        raise StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


class StripeClient:
    """
    Wrapper for the Stripe API used by checkout and the payment webhook.

    Blocking SDK calls run in a worker thread so the event loop is never
    held for longer than scheduling the call.
    """

    def __init__(self) -> None:
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(
            error,
            (stripe.APIConnectionError, stripe.APIError),
        ):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, error: stripe.StripeError) -> StripeError:
        error_type = self._classify_error(error)
        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        return StripeError(message=str(error), error_type=error_type, original_error=error)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def _create_session(self, params: Dict[str, Any]) -> stripe.checkout.Session:
        self.circuit_breaker.before_call()
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            raise self._handle_stripe_error(e) from e
        self.circuit_breaker.on_success()
        return session

    async def create_checkout_session(
        self,
        product_name: str,
        amount: int,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        description: Optional[str] = None,
    ) -> str:
        """
        Create a one-off card payment Checkout Session.

        Args:
            product_name: Line item name shown on the checkout page
            amount: Amount in whole currency units
            success_url: Redirect after payment
            cancel_url: Redirect when the user abandons checkout
            metadata: Metadata echoed back by the ``checkout.session.completed`` webhook
            description: Optional line item description

        Returns:
            str: Hosted checkout URL

        Raises:
            PaymentGatewayError: Stripe refused or stayed unavailable
        """
        product_data: Dict[str, Any] = {"name": product_name}
        if description:
            product_data["description"] = description

        params = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.settings.payment_currency,
                        "product_data": product_data,
                        "unit_amount": amount * 100,  # Amount in cents
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }

        logger.info("creating_checkout_session", amount=amount, checkout_type=metadata.get("type"))
        try:
            session = await self._create_session(params)
        except StripeError as e:
            raise PaymentGatewayError(str(e), error_type=e.error_type.value) from e

        if not session.url:
            raise PaymentGatewayError("Stripe returned a checkout session without a URL")

        logger.info("checkout_session_created", session_id=session.id)
        return session.url

    def construct_event(self, payload: bytes, signature: str) -> stripe.Event:
        """
        Verify a webhook signature and parse the event.

        Raises:
            stripe.SignatureVerificationError: Signature does not match
            ValueError: Payload is not valid JSON
        """
        return stripe.Webhook.construct_event(
            payload, signature, self.settings.stripe_webhook_secret
        )

"""
Unit tests for the Stripe client wrapper.
"""
from unittest.mock import MagicMock, patch

import pytest
import stripe

from problem2profit.core.exceptions import PaymentGatewayError
from problem2profit.integrations.stripe_client import (
    CircuitBreaker,
    StripeClient,
    StripeError,
    StripeErrorType,
)


class TestStripeClient:
    """Test suite for StripeClient."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (stripe.RateLimitError("slow down"), StripeErrorType.RATE_LIMIT),
            (stripe.APIConnectionError("network"), StripeErrorType.TRANSIENT),
            (stripe.CardError("declined", "card", "card_declined"), StripeErrorType.PERMANENT),
            (stripe.InvalidRequestError("bad amount", "amount"), StripeErrorType.PERMANENT),
            (stripe.AuthenticationError("bad key"), StripeErrorType.PERMANENT),
        ],
    )
    def test_classify_error(self, error: stripe.StripeError, expected: StripeErrorType) -> None:
        assert StripeClient._classify_error(error) is expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_checkout_session(self) -> None:
        """Amounts are sent in cents and metadata is passed through."""
        client = StripeClient()
        session = MagicMock(id="cs_test_123", url="https://checkout.stripe.com/c/pay/cs_test_123")

        with patch.object(stripe.checkout.Session, "create", return_value=session) as create:
            url = await client.create_checkout_session(
                product_name="Facilitate Deal: Cold chain",
                amount=50,
                success_url="https://problem2profit.test/problems/prob1?deal=pending",
                cancel_url="https://problem2profit.test/problems/prob1",
                metadata={"type": "deal_creation", "itemId": "prob1"},
                description="A small contribution.",
            )

        assert url == session.url
        params = create.call_args.kwargs
        assert params["mode"] == "payment"
        assert params["metadata"] == {"type": "deal_creation", "itemId": "prob1"}
        line_item = params["line_items"][0]
        assert line_item["price_data"]["unit_amount"] == 5000
        assert line_item["price_data"]["currency"] == "usd"
        assert line_item["price_data"]["product_data"] == {
            "name": "Facilitate Deal: Cold chain",
            "description": "A small contribution.",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self) -> None:
        client = StripeClient()

        with patch.object(
            stripe.checkout.Session,
            "create",
            side_effect=stripe.InvalidRequestError("bad amount", "amount"),
        ) as create:
            with pytest.raises(PaymentGatewayError) as exc_info:
                await client.create_checkout_session(
                    product_name="Investor Membership (Lifetime)",
                    amount=99,
                    success_url="https://problem2profit.test/membership?payment=success",
                    cancel_url="https://problem2profit.test/membership?payment=cancelled",
                    metadata={"type": "membership"},
                )

        assert create.call_count == 1
        assert exc_info.value.metadata["error_type"] == "permanent"
        assert client.circuit_breaker.failure_count == 1


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)

        breaker.on_failure()
        breaker.before_call()
        breaker.on_failure()

        assert breaker.state == "open"
        with pytest.raises(StripeError) as exc_info:
            breaker.before_call()
        assert exc_info.value.error_type is StripeErrorType.TRANSIENT

    @pytest.mark.unit
    def test_half_open_after_timeout_then_closes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)
        breaker.on_failure()
        breaker.last_failure_time -= 1

        breaker.before_call()
        assert breaker.state == "half_open"

        breaker.on_success()
        breaker.on_success()
        assert breaker.state == "closed"

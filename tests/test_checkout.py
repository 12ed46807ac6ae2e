"""
Unit tests for checkout orchestration.
"""
from typing import Any
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from conftest import CHECKOUT_URL, PROBLEM_TITLE
from problem2profit.core.checkout import CheckoutService
from problem2profit.core.exceptions import (
    InvalidRequestError,
    NotFoundError,
    PaymentGatewayError,
    PermissionDeniedError,
)
from problem2profit.database.models import Deal, PaymentRecord, UserProfile


def disable_payments(service: CheckoutService) -> None:
    service.settings = service.settings.model_copy(update={"payments_enabled": False})


class TestStartDeal:
    """Test suite for CheckoutService.start_deal."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_deal_returns_checkout_url(
        self,
        checkout_service: CheckoutService,
        mock_stripe_client: AsyncMock,
        session_factory: Any,
    ) -> None:
        """The deal is only created by the webhook after payment."""
        result = await checkout_service.start_deal(
            "inv1", "pc1", "prob1", PROBLEM_TITLE, "problem", 50, solution_creator_id="sc1"
        )

        assert result.checkout_url == CHECKOUT_URL
        assert result.deal_id is None
        kwargs = mock_stripe_client.create_checkout_session.call_args.kwargs
        assert kwargs["amount"] == 50
        assert kwargs["product_name"] == f"Facilitate Deal: {PROBLEM_TITLE}"
        assert kwargs["success_url"] == "https://problem2profit.test/problems/prob1?deal=pending"
        assert kwargs["cancel_url"] == "https://problem2profit.test/problems/prob1"
        assert kwargs["metadata"] == {
            "type": "deal_creation",
            "investorId": "inv1",
            "primaryCreatorId": "pc1",
            "itemId": "prob1",
            "itemTitle": PROBLEM_TITLE,
            "itemType": "problem",
            "amount": "50",
            "solutionCreatorId": "sc1",
        }
        async with session_factory() as db:
            assert (await db.execute(select(Deal))).first() is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_deal_skips_checkout(
        self,
        checkout_service: CheckoutService,
        mock_stripe_client: AsyncMock,
        deal_service: Any,
        investor: UserProfile,
    ) -> None:
        deal_id = await deal_service.create_deal(
            investor, "pc1", "prob1", PROBLEM_TITLE, "problem", 50
        )

        result = await checkout_service.start_deal(
            "inv1", "pc1", "prob1", PROBLEM_TITLE, "problem", 50
        )

        assert result.deal_id == deal_id
        assert result.existing is True
        mock_stripe_client.create_checkout_session.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_free_deal_when_payments_disabled(
        self,
        checkout_service: CheckoutService,
        mock_stripe_client: AsyncMock,
        session_factory: Any,
    ) -> None:
        """The deal is created at once with a zero payment record."""
        disable_payments(checkout_service)

        result = await checkout_service.start_deal(
            "inv1", "pc1", "prob1", PROBLEM_TITLE, "problem", 50
        )

        assert result.deal_id is not None
        assert result.checkout_url is None
        mock_stripe_client.create_checkout_session.assert_not_called()
        async with session_factory() as db:
            payment = (await db.execute(select(PaymentRecord))).scalar_one()
        assert payment.amount == 0
        assert payment.related_deal_id == result.deal_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_investors_start_deals(self, checkout_service: CheckoutService) -> None:
        with pytest.raises(PermissionDeniedError) as exc_info:
            await checkout_service.start_deal(
                "u1", "pc1", "prob1", PROBLEM_TITLE, "problem", 50
            )
        assert exc_info.value.user_message == "Only investors can start deals."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_investor(self, checkout_service: CheckoutService) -> None:
        with pytest.raises(NotFoundError):
            await checkout_service.start_deal(
                "ghost", "pc1", "prob1", PROBLEM_TITLE, "problem", 50
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_below_minimum(
        self, checkout_service: CheckoutService, mock_stripe_client: AsyncMock
    ) -> None:
        with pytest.raises(InvalidRequestError, match="below the minimum"):
            await checkout_service.start_deal(
                "inv1", "pc1", "prob1", PROBLEM_TITLE, "problem", 5
            )
        mock_stripe_client.create_checkout_session.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_solutions_cannot_be_dealt(self, checkout_service: CheckoutService) -> None:
        with pytest.raises(InvalidRequestError):
            await checkout_service.start_deal(
                "inv1", "sc1", "sol1", PROBLEM_TITLE, "solution", 50
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_public_base_url(self, checkout_service: CheckoutService) -> None:
        checkout_service.settings = checkout_service.settings.model_copy(
            update={"public_base_url": ""}
        )

        with pytest.raises(PaymentGatewayError):
            await checkout_service.start_deal(
                "inv1", "pc1", "prob1", PROBLEM_TITLE, "problem", 50
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_failure_propagates(
        self, checkout_service: CheckoutService, mock_stripe_client: AsyncMock
    ) -> None:
        mock_stripe_client.create_checkout_session.side_effect = PaymentGatewayError("down")

        with pytest.raises(PaymentGatewayError) as exc_info:
            await checkout_service.start_deal(
                "inv1", "pc1", "prob1", PROBLEM_TITLE, "problem", 50
            )
        assert exc_info.value.http_status == 502


class TestStartMembership:
    """Test suite for CheckoutService.start_membership."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_free_upgrade(
        self, checkout_service: CheckoutService, session_factory: Any
    ) -> None:
        disable_payments(checkout_service)

        result = await checkout_service.start_membership("u1", 99)

        assert result.instant is True
        async with session_factory() as db:
            user = await db.get(UserProfile, "u1")
            payment = (await db.execute(select(PaymentRecord))).scalar_one()
        assert user.is_premium is True
        assert user.role == "Investor"
        assert payment.type == "membership"
        assert payment.amount == 0
        assert payment.details == "Free upgrade (payments disabled)"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_membership_checkout(
        self,
        checkout_service: CheckoutService,
        mock_stripe_client: AsyncMock,
        session_factory: Any,
    ) -> None:
        result = await checkout_service.start_membership("u1", 99)

        assert result.instant is False
        assert result.checkout_url == CHECKOUT_URL
        metadata = mock_stripe_client.create_checkout_session.call_args.kwargs["metadata"]
        assert metadata["type"] == "membership"
        assert metadata["userId"] == "u1"
        assert metadata["amount"] == "99"
        async with session_factory() as db:
            assert (await db.get(UserProfile, "u1")).is_premium is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_membership_needs_price(self, checkout_service: CheckoutService) -> None:
        with pytest.raises(InvalidRequestError):
            await checkout_service.start_membership("u1", 0)

"""
Checkout orchestration for deals and memberships.

When payments are enabled the user is sent to a Stripe Checkout page and the
actual deal creation or membership upgrade happens in the payment webhook.
When payments are disabled both complete immediately with amount 0.
"""
from typing import Optional

import structlog

from problem2profit.config import get_settings
from problem2profit.core.deals import DealTransactionService
from problem2profit.core.exceptions import (
    InvalidRequestError,
    NotFoundError,
    PaymentGatewayError,
    PermissionDeniedError,
)
from problem2profit.core.membership import MembershipService
from problem2profit.core.types import (
    INVESTOR_ROLE,
    DealItemType,
    MembershipResult,
    StartDealResult,
)
from problem2profit.database.models import UserProfile
from problem2profit.integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)

DEAL_PRODUCT_DESCRIPTION = "A small contribution to start the conversation with the creator(s)."


class CheckoutService:
    """Starts deals and memberships, through Stripe Checkout when payments are on."""

    def __init__(
        self,
        deal_service: DealTransactionService,
        membership_service: MembershipService,
        stripe_client: Optional[StripeClient] = None,
    ):
        self.settings = get_settings()
        self.deal_service = deal_service
        self.membership_service = membership_service
        self._stripe_client = stripe_client

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    def _base_url(self) -> str:
        base_url = self.settings.public_base_url.rstrip("/")
        if not base_url:
            raise PaymentGatewayError("PUBLIC_BASE_URL is not set")
        return base_url

    async def _load_user(self, user_id: str) -> UserProfile:
        async with self.deal_service.session_factory() as db:
            user = await db.get(UserProfile, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def start_deal(
        self,
        investor_id: str,
        primary_creator_id: str,
        item_id: str,
        item_title: str,
        item_type: str,
        amount: int,
        solution_creator_id: Optional[str] = None,
    ) -> StartDealResult:
        """
        Start a deal on an item.

        Returns the existing deal if the investor already has one on the item;
        creates the deal for free when payments are disabled; otherwise returns
        a checkout URL whose webhook will create the deal.

        Raises:
            PermissionDeniedError: Caller is not an investor
            InvalidRequestError: Bad item type or amount below the minimum
            PaymentGatewayError: Checkout session could not be created
        """
        investor = await self._load_user(investor_id)
        if investor.role != INVESTOR_ROLE:
            raise PermissionDeniedError(
                f"User {investor_id} with role {investor.role} tried to start a deal",
                user_message="Only investors can start deals.",
            )
        try:
            deal_type = DealItemType(item_type)
        except ValueError:
            raise InvalidRequestError(f"Deals cannot be started on item type {item_type!r}")

        existing = await self.deal_service.find_existing_deal(item_id, investor_id)
        if existing is not None:
            logger.info("deal_start_existing", deal_id=existing, item_id=item_id)
            return StartDealResult(deal_id=existing, existing=True)

        if not self.settings.payments_enabled:
            deal_id = await self.deal_service.create_deal(
                investor,
                primary_creator_id,
                item_id,
                item_title,
                deal_type.value,
                0,
                solution_creator_id,
            )
            return StartDealResult(deal_id=deal_id)

        minimum = self.settings.minimum_deal_amount
        if amount < minimum:
            raise InvalidRequestError(
                f"Deal amount {amount} is below the minimum of {minimum}",
                user_message=f"Invalid contribution amount. Minimum is ${minimum}.",
            )

        base_url = self._base_url()
        metadata = {
            "type": "deal_creation",
            "investorId": investor_id,
            "primaryCreatorId": primary_creator_id,
            "itemId": item_id,
            "itemTitle": item_title,
            "itemType": deal_type.value,
            "amount": str(amount),
        }
        if solution_creator_id:
            metadata["solutionCreatorId"] = solution_creator_id

        item_path = f"{base_url}/{deal_type.value}s/{item_id}"
        url = await self.stripe_client.create_checkout_session(
            product_name=f"Facilitate Deal: {item_title}",
            amount=amount,
            success_url=f"{item_path}?deal=pending",
            cancel_url=item_path,
            metadata=metadata,
            description=DEAL_PRODUCT_DESCRIPTION,
        )
        logger.info("deal_checkout_started", investor_id=investor_id, item_id=item_id)
        return StartDealResult(checkout_url=url)

    async def start_membership(
        self,
        user_id: str,
        price: int,
        plan: str = "investor",
        payment_frequency: str = "lifetime",
    ) -> MembershipResult:
        """
        Start an investor membership purchase.

        Upgrades instantly when payments are disabled, otherwise returns a
        checkout URL whose webhook performs the upgrade.
        """
        user = await self._load_user(user_id)

        if not self.settings.payments_enabled:
            await self.membership_service.upgrade_membership(
                user_id, plan, payment_frequency, 0, details="Free upgrade (payments disabled)"
            )
            return MembershipResult(instant=True)

        if price <= 0:
            raise InvalidRequestError(f"Membership price must be positive: {price}")

        base_url = self._base_url()
        url = await self.stripe_client.create_checkout_session(
            product_name="Investor Membership (Lifetime)",
            amount=price,
            success_url=f"{base_url}/membership?payment=success",
            cancel_url=f"{base_url}/membership?payment=cancelled",
            metadata={
                "type": "membership",
                "userId": user.id,
                "userName": user.name,
                "userAvatarUrl": user.avatar_url,
                "plan": plan,
                "paymentFrequency": payment_frequency,
                "amount": str(price),
            },
        )
        logger.info("membership_checkout_started", user_id=user_id)
        return MembershipResult(instant=False, checkout_url=url)

"""Investor membership upgrades."""
import uuid
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from problem2profit.core.exceptions import InvalidRequestError, NotFoundError
from problem2profit.core.transactions import TransactionRunner
from problem2profit.core.types import INVESTOR_ROLE
from problem2profit.database.models import PaymentRecord, UserProfile

logger = structlog.get_logger(__name__)


class MembershipService:
    """Grants premium investor membership and logs the payment."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        runner: Optional[TransactionRunner] = None,
    ):
        self.runner = runner or TransactionRunner(session_factory=session_factory)

    async def upgrade_membership(
        self,
        user_id: str,
        plan: str,
        payment_frequency: str,
        amount: int,
        details: Optional[str] = None,
    ) -> None:
        """
        Make a user a premium investor and log a membership payment.

        Both writes happen in one transaction. Called directly for free
        upgrades and by the payment webhook after checkout.

        Raises:
            NotFoundError: User does not exist
        """
        if amount < 0:
            raise InvalidRequestError(f"Membership amount cannot be negative: {amount}")

        async def work(db: AsyncSession) -> None:
            user = await db.get(UserProfile, user_id)
            if user is None:
                raise NotFoundError("User", user_id)

            await db.execute(
                update(UserProfile)
                .where(UserProfile.id == user_id)
                .values(is_premium=True, role=INVESTOR_ROLE)
            )
            db.add(
                PaymentRecord(
                    id=uuid.uuid4().hex,
                    user_id=user.id,
                    user_name=user.name,
                    user_avatar_url=user.avatar_url,
                    type="membership",
                    amount=amount,
                    plan=plan,
                    payment_frequency=payment_frequency,
                    details=details,
                )
            )

        await self.runner.run(work, "upgrade_membership")
        logger.info("membership_upgraded", user_id=user_id, plan=plan, amount=amount)

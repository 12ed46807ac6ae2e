"""
Deal transaction service.

Creates deals atomically with their dependent counters and payment log, and
manages deal status, chat messages and unread counters.

Deal creation is two-phase:
- Phase 1 (one transaction): deal row, participants, interested-investor
  count, per-user deal counts, payment record and an outbox event
- Phase 2 (after commit, best effort): notifications, system chat message,
  unread counters; see ``problem2profit.core.side_effects``

Deal ids are derived from ``(investor_id, item_id)`` and backed by a unique
constraint, so concurrent confirmations for the same pair resolve to one deal.
"""
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from problem2profit.core.exceptions import (
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    Problem2ProfitError,
    TransactionConflictError,
)
from problem2profit.core.side_effects import (
    DEAL_CREATED,
    DEAL_STATUS_CHANGED,
    SideEffectDispatcher,
    build_event,
    increment_unread_count,
)
from problem2profit.core.transactions import TransactionRunner
from problem2profit.core.types import DEAL_STARTED_MESSAGE, DealItemType, DealStatus
from problem2profit.database.models import (
    ContentItem,
    Deal,
    DealMessage,
    DealParticipant,
    PaymentRecord,
    UnreadDealCount,
    UserProfile,
)
from problem2profit.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEAL_ID_NAMESPACE = uuid.UUID("6f1c2f0e-3b59-4d8e-9a57-2a4b8f0c9d11")

# Transitions a deal can make; terminal states have none
ALLOWED_TRANSITIONS = {
    DealStatus.ACTIVE: {DealStatus.COMPLETED, DealStatus.CANCELLED},
    DealStatus.COMPLETED: set(),
    DealStatus.CANCELLED: set(),
}


def deal_id_for(investor_id: str, item_id: str) -> str:
    """Deterministic deal id for an (investor, item) pair."""
    return str(uuid.uuid5(DEAL_ID_NAMESPACE, f"{investor_id}:{item_id}"))


def serialize_deal(deal: Deal, unread_count: int = 0) -> Dict[str, Any]:
    """Convert a deal row to its API shape."""
    return {
        "id": deal.id,
        "investor": deal.investor,
        "primary_creator": deal.primary_creator,
        "solution_creator": deal.solution_creator,
        "related_item_id": deal.related_item_id,
        "title": deal.title,
        "type": deal.type,
        "participant_ids": list(deal.participant_ids),
        "status": deal.status,
        "created_at": deal.created_at.isoformat(),
        "unread_count": unread_count,
    }


def serialize_message(message: DealMessage) -> Dict[str, Any]:
    """Convert a chat message row to its API shape."""
    return {
        "id": message.id,
        "deal_id": message.deal_id,
        "text": message.text,
        "sender": message.sender,
        "created_at": message.created_at.isoformat(),
    }


class DealTransactionService:
    """
    Owns every mutation of deals and the counters that depend on them.

    All mutations run through ``TransactionRunner``; post-commit work is
    handed to ``SideEffectDispatcher`` and never fails the operation.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        runner: Optional[TransactionRunner] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
    ):
        """
        Initialize deal service.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
            runner: Optional transaction runner
            dispatcher: Optional side-effect dispatcher
        """
        self.runner = runner or TransactionRunner(session_factory=session_factory)
        self.dispatcher = dispatcher or SideEffectDispatcher(session_factory=session_factory)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self.runner.session_factory

    async def find_existing_deal(self, item_id: str, investor_id: str) -> Optional[str]:
        """
        Look up the deal an investor already has on an item.

        Args:
            item_id: Related content item id
            investor_id: Investor user id

        Returns:
            Optional[str]: Deal id, or None if the investor has no deal on the item
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(Deal.id)
                .where(Deal.related_item_id == item_id, Deal.investor_id == investor_id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def create_deal(
        self,
        investor: UserProfile,
        primary_creator_id: str,
        item_id: str,
        item_title: str,
        item_type: str,
        amount: int,
        solution_creator_id: Optional[str] = None,
    ) -> str:
        """
        Create a deal and its dependent records atomically.

        Steps (single transaction):
        1. Resolve the item (its stored type must match ``item_type``), the
           primary creator (required) and solution creator (optional)
        2. Insert the deal and one participant row per distinct participant
        3. Increment the item's ``interested_investors_count``
        4. Increment ``deals_count`` of every distinct participant
        5. Log a ``deal_creation`` payment record
        6. Write a ``deal.created`` outbox event

        Then notifications, the system chat message and unread counters are
        applied after commit.

        Args:
            investor: Investor profile
            primary_creator_id: Creator of the related item
            item_id: Related content item id
            item_title: Deal title
            item_type: ``problem``, ``idea`` or ``business``
            amount: Amount paid (0 for free deals)
            solution_creator_id: Optional solution creator

        Returns:
            str: Deal id (the existing one if the pair already has a deal)

        Raises:
            NotFoundError: Primary creator, investor or item does not exist
            InvalidRequestError: Bad item type or negative amount
            TransactionConflictError: Contention persisted past max attempts
            OperationTimeoutError: The operation exceeded the timeout
        """
        try:
            deal_type = DealItemType(item_type)
        except ValueError:
            raise InvalidRequestError(f"Deals cannot be started on item type {item_type!r}")
        if amount < 0:
            raise InvalidRequestError(f"Deal amount cannot be negative: {amount}")

        deal_id = deal_id_for(investor.id, item_id)
        start = time.monotonic()

        async def work(db: AsyncSession) -> Tuple[bool, Optional[int]]:
            item = await db.get(ContentItem, item_id)
            if item is None or item.item_type != deal_type.value:
                raise NotFoundError("Item", item_id)

            primary = await db.get(UserProfile, primary_creator_id)
            if primary is None:
                raise NotFoundError("User", primary_creator_id)

            solution = None
            if solution_creator_id:
                solution = await db.get(UserProfile, solution_creator_id)
                if solution is None:
                    logger.warning(
                        "solution_creator_not_found",
                        deal_id=deal_id,
                        solution_creator_id=solution_creator_id,
                    )

            if await db.get(Deal, deal_id) is not None:
                return False, None

            candidate_ids = [investor.id, primary.id]
            if solution is not None:
                candidate_ids.append(solution.id)
            participant_ids = list(dict.fromkeys(candidate_ids))

            db.add(
                Deal(
                    id=deal_id,
                    investor_id=investor.id,
                    investor=investor.reference(),
                    primary_creator=primary.reference(),
                    solution_creator=solution.reference() if solution is not None else None,
                    related_item_id=item_id,
                    title=item_title,
                    type=deal_type.value,
                    participant_ids=participant_ids,
                    status=DealStatus.ACTIVE.value,
                )
            )
            try:
                await db.flush()
            except IntegrityError as e:
                raise TransactionConflictError("create_deal", "deal inserted concurrently") from e

            db.add_all(DealParticipant(deal_id=deal_id, user_id=uid) for uid in participant_ids)

            await db.execute(
                update(ContentItem)
                .where(ContentItem.id == item_id)
                .values(interested_investors_count=ContentItem.interested_investors_count + 1)
            )

            result = await db.execute(
                update(UserProfile)
                .where(UserProfile.id.in_(participant_ids))
                .values(deals_count=UserProfile.deals_count + 1)
            )
            if result.rowcount != len(participant_ids):
                raise NotFoundError("User", investor.id)

            db.add(
                PaymentRecord(
                    id=uuid.uuid4().hex,
                    user_id=investor.id,
                    user_name=investor.name,
                    user_avatar_url=investor.avatar_url,
                    type="deal_creation",
                    amount=amount,
                    related_deal_id=deal_id,
                    related_deal_title=item_title,
                )
            )

            recipients = [uid for uid in participant_ids if uid != investor.id]
            message = (
                f'{investor.name} has started a deal for your {deal_type.value}: "{item_title}"'
            )
            event = build_event(
                deal_id,
                "deal",
                DEAL_CREATED,
                [{"user_id": uid, "message": message, "link": f"/deals/{deal_id}"} for uid in recipients],
                deal_id=deal_id,
                system_message=DEAL_STARTED_MESSAGE,
                unread_for=recipients,
            )
            db.add(event)
            await db.flush()
            return True, event.id

        try:
            created, event_id = await self.runner.run(work, "create_deal")
        except Problem2ProfitError:
            metrics.record_deal_creation("failed")
            raise

        if not created:
            metrics.record_deal_creation("existing")
            logger.info("deal_already_exists", deal_id=deal_id, item_id=item_id)
            return deal_id

        metrics.record_deal_creation("created", time.monotonic() - start)
        logger.info(
            "deal_created",
            deal_id=deal_id,
            item_id=item_id,
            investor_id=investor.id,
            amount=amount,
        )
        await self.dispatcher.dispatch(event_id)
        return deal_id

    async def update_deal_status(
        self, deal_id: str, new_status: str, requesting_user_id: str
    ) -> None:
        """
        Move an active deal to ``completed`` or ``cancelled``.

        Only the deal's investor may do this. The related item is closed and
        the investor's completed/cancelled counter is incremented in the same
        transaction; the other participants are notified after commit.

        Raises:
            NotFoundError: Deal does not exist
            PermissionDeniedError: Caller is not the deal's investor
            InvalidStateError: Transition is not allowed
        """
        try:
            target = DealStatus(new_status)
        except ValueError:
            raise InvalidRequestError(f"Unknown deal status: {new_status!r}")

        async def work(db: AsyncSession) -> int:
            deal = await db.get(Deal, deal_id)
            if deal is None:
                raise NotFoundError("Deal", deal_id)
            if deal.investor["userId"] != requesting_user_id:
                raise PermissionDeniedError(
                    f"User {requesting_user_id} is not the investor of deal {deal_id}",
                    user_message="Only the investor can change the deal status.",
                )
            current = DealStatus(deal.status)
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStateError(current.value, target.value)

            result = await db.execute(
                update(Deal)
                .where(Deal.id == deal_id, Deal.status == DealStatus.ACTIVE.value)
                .values(status=target.value)
            )
            if result.rowcount == 0:
                raise TransactionConflictError("update_deal_status", "deal status changed concurrently")

            await db.execute(
                update(ContentItem)
                .where(ContentItem.id == deal.related_item_id)
                .values(is_closed=True)
            )

            counter = (
                UserProfile.deals_completed_count
                if target is DealStatus.COMPLETED
                else UserProfile.deals_cancelled_count
            )
            await db.execute(
                update(UserProfile)
                .where(UserProfile.id == requesting_user_id)
                .values({counter: counter + 1})
            )

            message = f'{deal.investor["name"]} has {target.value} the deal: "{deal.title}"'
            event = build_event(
                deal_id,
                "deal",
                DEAL_STATUS_CHANGED,
                [
                    {"user_id": uid, "message": message, "link": f"/deals/{deal_id}"}
                    for uid in deal.participant_ids
                    if uid != requesting_user_id
                ],
            )
            db.add(event)
            await db.flush()
            return event.id

        event_id = await self.runner.run(work, "update_deal_status")
        metrics.record_deal_status_change(target.value)
        logger.info("deal_status_updated", deal_id=deal_id, status=target.value)
        await self.dispatcher.dispatch(event_id)

    async def get_deal(self, deal_id: str) -> Dict[str, Any]:
        """Fetch one deal or raise ``NotFoundError``."""
        async with self.session_factory() as db:
            deal = await db.get(Deal, deal_id)
            if deal is None:
                raise NotFoundError("Deal", deal_id)
            return serialize_deal(deal)

    async def get_deals_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Deals the user participates in, newest first, with their unread counts."""
        async with self.session_factory() as db:
            deals = await db.execute(
                select(Deal)
                .join(DealParticipant, DealParticipant.deal_id == Deal.id)
                .where(DealParticipant.user_id == user_id)
                .order_by(Deal.created_at.desc(), Deal.id)
            )
            unread = await db.execute(
                select(UnreadDealCount.deal_id, UnreadDealCount.count).where(
                    UnreadDealCount.user_id == user_id
                )
            )
            counts = dict(unread.all())
            return [serialize_deal(d, counts.get(d.id, 0)) for d in deals.scalars().all()]

    async def get_messages(self, deal_id: str, requesting_user_id: str) -> List[Dict[str, Any]]:
        """Chat messages of a deal, oldest first. Participants only."""
        async with self.session_factory() as db:
            deal = await db.get(Deal, deal_id)
            if deal is None:
                raise NotFoundError("Deal", deal_id)
            if requesting_user_id not in deal.participant_ids:
                raise PermissionDeniedError(
                    f"User {requesting_user_id} is not a participant of deal {deal_id}"
                )
            result = await db.execute(
                select(DealMessage)
                .where(DealMessage.deal_id == deal_id)
                .order_by(DealMessage.created_at, DealMessage.id)
            )
            return [serialize_message(m) for m in result.scalars().all()]

    async def post_message(self, deal_id: str, sender_id: str, text: str) -> int:
        """
        Append a chat message and bump every other participant's unread count.

        Returns:
            int: New message id
        """
        text = text.strip()
        if not text:
            raise InvalidRequestError("Message text cannot be empty")

        async def work(db: AsyncSession) -> int:
            deal = await db.get(Deal, deal_id)
            if deal is None:
                raise NotFoundError("Deal", deal_id)
            if sender_id not in deal.participant_ids:
                raise PermissionDeniedError(
                    f"User {sender_id} is not a participant of deal {deal_id}"
                )
            sender = await db.get(UserProfile, sender_id)
            if sender is None:
                raise NotFoundError("User", sender_id)

            message = DealMessage(deal_id=deal_id, text=text, sender=sender.reference())
            db.add(message)
            await db.flush()

            for uid in deal.participant_ids:
                if uid != sender_id:
                    await increment_unread_count(db, uid, deal_id)
            return message.id

        message_id = await self.runner.run(work, "post_message")
        logger.info("deal_message_posted", deal_id=deal_id, sender_id=sender_id)
        return message_id

    async def mark_deal_as_read(self, user_id: str, deal_id: str) -> None:
        """Clear a user's unread counter for a deal."""

        async def work(db: AsyncSession) -> None:
            await db.execute(
                delete(UnreadDealCount).where(
                    UnreadDealCount.user_id == user_id, UnreadDealCount.deal_id == deal_id
                )
            )

        await self.runner.run(work, "mark_deal_as_read")

"""
Upvote toggle service.

A toggle flips the caller's membership in the target's upvote set, moves the
target's ``upvotes`` counter by the same amount and adjusts the creator's
points by the target type's magnitude, all in one transaction. Only additions
notify the creator.
"""
from typing import Optional, Tuple

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from problem2profit.core.exceptions import (
    InvalidRequestError,
    NotFoundError,
    SelfActionError,
    TransactionConflictError,
)
from problem2profit.core.side_effects import UPVOTE_ADDED, SideEffectDispatcher, build_event
from problem2profit.core.transactions import TransactionRunner
from problem2profit.core.types import UPVOTE_POINTS, UpvoteResult, UpvoteTarget
from problem2profit.database.models import ContentItem, Upvote, UserProfile
from problem2profit.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class UpvoteToggleService:
    """Toggles upvotes on content items and investor profiles."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        runner: Optional[TransactionRunner] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
    ):
        self.runner = runner or TransactionRunner(session_factory=session_factory)
        self.dispatcher = dispatcher or SideEffectDispatcher(session_factory=session_factory)

    async def toggle_upvote(self, target_type: str, target_id: str, user_id: str) -> UpvoteResult:
        """
        Add the user's upvote if absent, remove it if present.

        Args:
            target_type: ``problem``, ``solution``, ``idea``, ``business`` or ``investor``
            target_id: Item id, or user id for ``investor``
            user_id: Upvoting user

        Returns:
            UpvoteResult: Direction, new upvote count and creator point delta

        Raises:
            NotFoundError: Target, creator or upvoting user does not exist
            SelfActionError: The user created the target
        """
        try:
            target = UpvoteTarget(target_type)
        except ValueError:
            raise InvalidRequestError(f"Cannot upvote target type {target_type!r}")

        model = UserProfile if target is UpvoteTarget.INVESTOR else ContentItem

        async def work(db: AsyncSession) -> Tuple[UpvoteResult, Optional[int]]:
            if target is UpvoteTarget.INVESTOR:
                profile = await db.get(UserProfile, target_id)
                if profile is None:
                    raise NotFoundError("Investor", target_id)
                creator_id, title = profile.id, profile.name
            else:
                item = await db.get(ContentItem, target_id)
                if item is None or item.item_type != target.value:
                    raise NotFoundError(target.value.capitalize(), target_id)
                creator_id, title = item.creator_id, item.title

            if creator_id == user_id:
                raise SelfActionError(user_id)

            upvoter = await db.get(UserProfile, user_id)
            if upvoter is None:
                raise NotFoundError("User", user_id)

            key = (target.value, target_id, user_id)
            if await db.get(Upvote, key) is not None:
                result = await db.execute(
                    delete(Upvote).where(
                        Upvote.target_type == target.value,
                        Upvote.target_id == target_id,
                        Upvote.user_id == user_id,
                    )
                )
                if result.rowcount == 0:
                    raise TransactionConflictError("toggle_upvote", "upvote removed concurrently")
                delta = -1
            else:
                db.add(Upvote(target_type=target.value, target_id=target_id, user_id=user_id))
                try:
                    await db.flush()
                except IntegrityError as e:
                    raise TransactionConflictError("toggle_upvote", "upvote added concurrently") from e
                delta = 1

            await db.execute(
                update(model).where(model.id == target_id).values(upvotes=model.upvotes + delta)
            )

            points_delta = UPVOTE_POINTS[target] * delta
            if points_delta:
                result = await db.execute(
                    update(UserProfile)
                    .where(UserProfile.id == creator_id)
                    .values(points=UserProfile.points + points_delta)
                )
                if result.rowcount == 0:
                    raise NotFoundError("User", creator_id)

            upvotes = (
                await db.execute(select(model.upvotes).where(model.id == target_id))
            ).scalar_one()

            event_id = None
            if delta > 0:
                event = build_event(
                    target_id,
                    target.value,
                    UPVOTE_ADDED,
                    [
                        {
                            "user_id": creator_id,
                            "message": f'{upvoter.name} upvoted your {target.value}: "{title}"',
                            "link": f"/{target.collection}/{target_id}",
                        }
                    ],
                )
                db.add(event)
                await db.flush()
                event_id = event.id

            return UpvoteResult(added=delta > 0, upvotes=upvotes, points_delta=points_delta), event_id

        outcome, event_id = await self.runner.run(work, "toggle_upvote")

        metrics.record_upvote_toggle(target.value, outcome.added)
        logger.info(
            "upvote_toggled",
            target_type=target.value,
            target_id=target_id,
            user_id=user_id,
            added=outcome.added,
            upvotes=outcome.upvotes,
        )
        if event_id is not None:
            await self.dispatcher.dispatch(event_id)
        return outcome

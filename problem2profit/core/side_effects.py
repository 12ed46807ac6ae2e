"""
Post-commit side effects driven by the transactional outbox.

Phase 1 of every marketplace operation writes an ``OutboxEvent`` in the same
transaction as the domain change. Phase 2, implemented here, applies the
event's steps after commit:

1. ``notify``          - append notifications for the listed recipients
2. ``system_message``  - seed the deal chat with a system-authored message
3. ``unread_counts``   - bump ``unreadDealMessages[dealId]`` for recipients

Each step runs in its own transaction that also records the step on the
outbox row, so a step is applied at most once even when the event is
replayed. A failing step is logged as ``SideEffectError`` and never aborts
the remaining steps or the caller.
"""
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from problem2profit.core.exceptions import SideEffectError
from problem2profit.core.notifications import NotificationService
from problem2profit.core.types import SYSTEM_SENDER
from problem2profit.database.connection import get_session_factory
from problem2profit.database.models import DealMessage, OutboxEvent, UnreadDealCount
from problem2profit.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEAL_CREATED = "deal.created"
DEAL_STATUS_CHANGED = "deal.status_changed"
UPVOTE_ADDED = "upvote.added"
CONTENT_CREATED = "content.created"

EVENT_STEPS: Dict[str, tuple[str, ...]] = {
    DEAL_CREATED: ("notify", "system_message", "unread_counts"),
    DEAL_STATUS_CHANGED: ("notify",),
    UPVOTE_ADDED: ("notify",),
    CONTENT_CREATED: ("notify",),
}

_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


async def increment_unread_count(db: AsyncSession, user_id: str, deal_id: str) -> None:
    """
    Atomically add one to a user's unread counter for a deal.

    Uses an upsert where the dialect supports one.
    """
    insert_fn = _UPSERT_INSERTS.get(db.get_bind().dialect.name)
    if insert_fn is None:
        row = await db.get(UnreadDealCount, (user_id, deal_id), with_for_update=True)
        if row is None:
            db.add(UnreadDealCount(user_id=user_id, deal_id=deal_id, count=1))
        else:
            row.count = row.count + 1
        return

    stmt = insert_fn(UnreadDealCount).values(user_id=user_id, deal_id=deal_id, count=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "deal_id"],
        set_={"count": UnreadDealCount.count + 1},
    )
    await db.execute(stmt)


def build_event(
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    notifications: List[Dict[str, str]],
    **extra: Any,
) -> OutboxEvent:
    """
    Build an outbox row describing the side effects of a committed change.

    Args:
        aggregate_id: Id of the deal or item the event belongs to
        aggregate_type: ``deal``, ``item`` or ``user``
        event_type: One of the event types in ``EVENT_STEPS``
        notifications: ``{"user_id", "message", "link"}`` entries
        **extra: Additional payload keys used by the event's steps

    Returns:
        OutboxEvent: Unsaved outbox row
    """
    payload: Dict[str, Any] = {"notifications": notifications}
    payload.update(extra)
    return OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        completed_steps=[],
        attempts=0,
        published=False,
    )


class SideEffectDispatcher:
    """
    Applies the post-commit steps of outbox events.

    Never raises: every failure is logged, counted and left on the outbox
    row for the publisher worker to replay.
    """

    def __init__(
        self,
        notification_service: Optional[NotificationService] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._session_factory = session_factory
        self.notification_service = notification_service or NotificationService(
            session_factory=session_factory
        )
        self._steps: Dict[str, Callable[[AsyncSession, Dict[str, Any]], Awaitable[None]]] = {
            "notify": self._notify,
            "system_message": self._post_system_message,
            "unread_counts": self._increment_unread_counts,
        }

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def _notify(self, db: AsyncSession, payload: Dict[str, Any]) -> None:
        for entry in payload.get("notifications", []):
            await self.notification_service.notify(
                db, entry["user_id"], entry["message"], entry["link"]
            )

    async def _post_system_message(self, db: AsyncSession, payload: Dict[str, Any]) -> None:
        db.add(
            DealMessage(
                deal_id=payload["deal_id"],
                text=payload["system_message"],
                sender=dict(SYSTEM_SENDER),
            )
        )

    async def _increment_unread_counts(
        self, db: AsyncSession, payload: Dict[str, Any]
    ) -> None:
        for user_id in payload.get("unread_for", []):
            await increment_unread_count(db, user_id, payload["deal_id"])

    async def _run_step(self, event_id: int, step: str, payload: Dict[str, Any]) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                event = await db.get(OutboxEvent, event_id, with_for_update=True)
                if event is None or step in event.completed_steps:
                    return
                await self._steps[step](db, payload)
                event.completed_steps = [*event.completed_steps, step]

    async def _finish(self, event_id: int, failures: List[SideEffectError]) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                event = await db.get(OutboxEvent, event_id, with_for_update=True)
                if event is None:
                    return
                event.attempts = event.attempts + 1
                if failures:
                    event.last_error = "; ".join(f.message for f in failures)
                else:
                    event.published = True
                    event.published_at = datetime.now(timezone.utc)
                    event.last_error = None

    async def dispatch(self, event_id: int) -> bool:
        """
        Apply every pending step of an outbox event.

        Args:
            event_id: Outbox event id

        Returns:
            bool: True when all steps are done (event published)
        """
        try:
            async with self.session_factory() as db:
                event = await db.get(OutboxEvent, event_id)
                if event is None:
                    logger.warning("outbox_event_missing", event_id=event_id)
                    return False
                if event.published:
                    return True
                event_type = event.event_type
                payload = dict(event.payload)
                completed = list(event.completed_steps)

            failures: List[SideEffectError] = []
            for step in EVENT_STEPS.get(event_type, ()):
                if step in completed:
                    continue
                try:
                    await self._run_step(event_id, step, payload)
                except Exception as e:
                    failure = SideEffectError(step, event_id, e)
                    failures.append(failure)
                    metrics.record_side_effect_failure(event_type, step)
                    logger.error(
                        "side_effect_failed",
                        event_id=event_id,
                        event_type=event_type,
                        step=step,
                        error=str(e),
                    )

            await self._finish(event_id, failures)

        except Exception as e:
            logger.error("side_effect_dispatch_failed", event_id=event_id, error=str(e))
            return False

        if failures:
            return False

        metrics.record_outbox_event_published(event_type)
        logger.info("side_effects_applied", event_id=event_id, event_type=event_type)
        return True

"""
Outbox replay.

Request handlers dispatch their outbox event right after commit. Events whose
side effects did not all complete (a step failed, or the process died between
commit and dispatch) stay unpublished; this publisher replays them once they
are older than the grace period.

Events are picked least-attempted first, so an event that keeps failing cannot
starve newer ones. After ``outbox_max_attempts`` dispatches an event is no
longer replayed; it stays unpublished with its ``last_error`` for manual
replay and is reported through the dead-letter gauge.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from problem2profit.config import get_settings
from problem2profit.core.side_effects import SideEffectDispatcher
from problem2profit.database.connection import get_session_factory
from problem2profit.database.models import OutboxEvent
from problem2profit.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OutboxPublisher:
    """
    Replays unpublished outbox events through the side-effect dispatcher.

    Replays are safe because the dispatcher skips steps already recorded as
    completed on the event.
    """

    def __init__(
        self,
        dispatcher: Optional[SideEffectDispatcher] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
        grace_period_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            dispatcher: Side-effect dispatcher used to apply events
            session_factory: Optional session factory (uses the global one if not provided)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
            grace_period_seconds: Minimum event age before a replay
            max_attempts: Dispatch attempts after which an event is skipped
        """
        settings = get_settings()
        self._session_factory = session_factory
        self.dispatcher = dispatcher or SideEffectDispatcher(session_factory=session_factory)
        self.batch_size = batch_size or settings.outbox_batch_size
        self.poll_interval_seconds = poll_interval_seconds or settings.outbox_poll_interval_seconds
        self.grace_period_seconds = (
            grace_period_seconds
            if grace_period_seconds is not None
            else settings.outbox_grace_period_seconds
        )
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
            grace_period=self.grace_period_seconds,
            max_attempts=self.max_attempts,
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def _fetch_pending_event_ids(self) -> List[int]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.grace_period_seconds)
        async with self.session_factory() as db:
            stmt = (
                select(OutboxEvent.id)
                .where(
                    OutboxEvent.published == False,  # noqa: E712
                    OutboxEvent.created_at <= cutoff,
                    OutboxEvent.attempts < self.max_attempts,
                )
                .order_by(OutboxEvent.attempts, OutboxEvent.created_at, OutboxEvent.id)
                .limit(self.batch_size)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def process_batch(self) -> int:
        """
        Replay a batch of unpublished events.

        Returns:
            int: Number of events fully applied
        """
        event_ids = await self._fetch_pending_event_ids()
        if not event_ids:
            return 0

        logger.info("outbox_batch_processing_started", batch_size=len(event_ids))

        published = 0
        for event_id in event_ids:
            if await self.dispatcher.dispatch(event_id):
                published += 1

        logger.info(
            "outbox_batch_processed",
            total=len(event_ids),
            published=published,
            failed=len(event_ids) - published,
        )
        return published

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Polls until ``stop`` is called.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                    metrics.set_outbox_dead_letter_count(await self.get_dead_letter_count())
                    published_count = await self.process_batch()

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # Events were processed, check immediately for more
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Get count of unpublished events that will still be replayed.

        Returns:
            int: Number of pending events
        """
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(
                OutboxEvent.published == False,  # noqa: E712
                OutboxEvent.attempts < self.max_attempts,
            )
            result = await db.execute(stmt)
            return result.scalar_one()

    async def get_dead_letter_count(self) -> int:
        """Count unpublished events that used up their dispatch attempts."""
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(
                OutboxEvent.published == False,  # noqa: E712
                OutboxEvent.attempts >= self.max_attempts,
            )
            result = await db.execute(stmt)
            return result.scalar_one()

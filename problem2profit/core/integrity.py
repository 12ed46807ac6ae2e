"""
Integrity checker for denormalized marketplace counters.

Recomputes counters from their source rows and reports discrepancies:
- Item and investor ``upvotes`` vs upvote rows
- Item ``interested_investors_count`` vs deals on the item
- User ``deals_count`` vs deal participations
- Deal ``participant_ids`` vs participant rows
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from problem2profit.core.types import UpvoteTarget
from problem2profit.database.connection import get_session_factory
from problem2profit.database.models import (
    ContentItem,
    Deal,
    DealParticipant,
    Upvote,
    UserProfile,
)
from problem2profit.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _discrepancy(check: str, entity_id: str, stored: Any, expected: Any) -> Dict[str, Any]:
    return {"check": check, "entity_id": entity_id, "stored": stored, "expected": expected}


class IntegrityChecker:
    """
    Read-only consistency check across counters and association rows.

    Nothing is repaired automatically; discrepancies are logged, exported
    as a gauge and returned for manual follow-up.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def _check_item_upvotes(self, db: AsyncSession) -> List[Dict[str, Any]]:
        counts = (
            select(Upvote.target_type, Upvote.target_id, func.count().label("n"))
            .group_by(Upvote.target_type, Upvote.target_id)
            .subquery()
        )
        stmt = select(ContentItem.id, ContentItem.upvotes, func.coalesce(counts.c.n, 0)).outerjoin(
            counts,
            and_(
                counts.c.target_type == ContentItem.item_type,
                counts.c.target_id == ContentItem.id,
            ),
        )
        return [
            _discrepancy("item_upvotes", item_id, stored, expected)
            for item_id, stored, expected in (await db.execute(stmt)).all()
            if stored != expected
        ]

    async def _check_investor_upvotes(self, db: AsyncSession) -> List[Dict[str, Any]]:
        counts = (
            select(Upvote.target_id, func.count().label("n"))
            .where(Upvote.target_type == UpvoteTarget.INVESTOR.value)
            .group_by(Upvote.target_id)
            .subquery()
        )
        stmt = select(UserProfile.id, UserProfile.upvotes, func.coalesce(counts.c.n, 0)).outerjoin(
            counts, counts.c.target_id == UserProfile.id
        )
        return [
            _discrepancy("user_upvotes", user_id, stored, expected)
            for user_id, stored, expected in (await db.execute(stmt)).all()
            if stored != expected
        ]

    async def _check_interested_investors(self, db: AsyncSession) -> List[Dict[str, Any]]:
        counts = (
            select(Deal.related_item_id, func.count().label("n"))
            .group_by(Deal.related_item_id)
            .subquery()
        )
        stmt = select(
            ContentItem.id,
            ContentItem.interested_investors_count,
            func.coalesce(counts.c.n, 0),
        ).outerjoin(counts, counts.c.related_item_id == ContentItem.id)
        return [
            _discrepancy("interested_investors_count", item_id, stored, expected)
            for item_id, stored, expected in (await db.execute(stmt)).all()
            if stored != expected
        ]

    async def _check_deals_count(self, db: AsyncSession) -> List[Dict[str, Any]]:
        counts = (
            select(DealParticipant.user_id, func.count().label("n"))
            .group_by(DealParticipant.user_id)
            .subquery()
        )
        stmt = select(
            UserProfile.id, UserProfile.deals_count, func.coalesce(counts.c.n, 0)
        ).outerjoin(counts, counts.c.user_id == UserProfile.id)
        return [
            _discrepancy("deals_count", user_id, stored, expected)
            for user_id, stored, expected in (await db.execute(stmt)).all()
            if stored != expected
        ]

    async def _check_participants(self, db: AsyncSession) -> List[Dict[str, Any]]:
        rows = (await db.execute(select(DealParticipant.deal_id, DealParticipant.user_id))).all()
        by_deal: Dict[str, set] = {}
        for deal_id, user_id in rows:
            by_deal.setdefault(deal_id, set()).add(user_id)

        found = []
        for deal_id, participant_ids in (await db.execute(select(Deal.id, Deal.participant_ids))).all():
            expected = by_deal.get(deal_id, set())
            if len(participant_ids) != len(set(participant_ids)) or set(participant_ids) != expected:
                found.append(
                    _discrepancy("participant_ids", deal_id, list(participant_ids), sorted(expected))
                )
        return found

    async def run(self) -> Dict[str, Any]:
        """
        Run every check in one read-only session.

        Returns:
            Dict[str, Any]: Report with ``checked_at``, ``discrepancy_count``
            and ``discrepancies``
        """
        logger.info("integrity_check_started")
        async with self.session_factory() as db:
            discrepancies = (
                await self._check_item_upvotes(db)
                + await self._check_investor_upvotes(db)
                + await self._check_interested_investors(db)
                + await self._check_deals_count(db)
                + await self._check_participants(db)
            )

        metrics.set_integrity_discrepancies(len(discrepancies))
        if discrepancies:
            logger.warning("integrity_discrepancies_found", count=len(discrepancies))
        else:
            logger.info("integrity_check_passed")

        return {
            "checked_at": datetime.now(timezone.utc).isoformat(),
            "discrepancy_count": len(discrepancies),
            "discrepancies": discrepancies,
        }

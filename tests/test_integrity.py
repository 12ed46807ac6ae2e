"""
Tests for the counter integrity check.
"""
from typing import Any

import pytest
from sqlalchemy import update

from conftest import PROBLEM_TITLE
from problem2profit.core.integrity import IntegrityChecker
from problem2profit.database.models import ContentItem, UserProfile


class TestIntegrityChecker:
    """Test suite for IntegrityChecker."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_consistent_after_marketplace_activity(
        self,
        integrity_checker: IntegrityChecker,
        deal_service: Any,
        upvote_service: Any,
        investor: UserProfile,
    ) -> None:
        """Counters maintained by the services always match their source rows."""
        await deal_service.create_deal(
            investor, "pc1", "prob1", PROBLEM_TITLE, "problem", 50, solution_creator_id="sc1"
        )
        await upvote_service.toggle_upvote("problem", "prob1", "u1")
        await upvote_service.toggle_upvote("investor", "inv1", "u1")
        await upvote_service.toggle_upvote("idea", "idea1", "u1")
        await upvote_service.toggle_upvote("idea", "idea1", "u1")

        report = await integrity_checker.run()

        assert report["discrepancy_count"] == 0
        assert report["discrepancies"] == []
        assert report["checked_at"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reports_drifted_counters(
        self, integrity_checker: IntegrityChecker, session_factory: Any
    ) -> None:
        async with session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(ContentItem).where(ContentItem.id == "idea1").values(upvotes=3)
                )
                await db.execute(
                    update(UserProfile).where(UserProfile.id == "pc1").values(deals_count=2)
                )

        report = await integrity_checker.run()

        assert report["discrepancy_count"] == 2
        assert {
            "check": "item_upvotes",
            "entity_id": "idea1",
            "stored": 3,
            "expected": 0,
        } in report["discrepancies"]
        assert {
            "check": "deals_count",
            "entity_id": "pc1",
            "stored": 2,
            "expected": 0,
        } in report["discrepancies"]

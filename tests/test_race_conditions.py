"""
Race condition tests for concurrent deal creation and upvotes.

Concurrent writers serialize on the database; conflicts are retried by the
transaction runner, so counters must match the number of distinct effects.
"""
import asyncio
from typing import Any

import pytest
from sqlalchemy import func, select

from conftest import PROBLEM_TITLE
from problem2profit.core.deals import DealTransactionService
from problem2profit.core.upvotes import UpvoteToggleService
from problem2profit.database.models import ContentItem, Deal, PaymentRecord, UserProfile


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_deal_creation_same_pair(
        self, deal_service: DealTransactionService, investor: UserProfile, session_factory: Any
    ) -> None:
        """
        Concurrent confirmations for one investor and item.

        Should create exactly one deal and count it once.
        """
        tasks = [
            deal_service.create_deal(investor, "pc1", "prob1", PROBLEM_TITLE, "problem", 75000)
            for _ in range(5)
        ]

        results = await asyncio.gather(*tasks)

        assert len(set(results)) == 1, "Multiple deals created for the same investor and item"
        async with session_factory() as db:
            assert (await db.execute(select(func.count()).select_from(Deal))).scalar_one() == 1
            assert (
                await db.execute(select(func.count()).select_from(PaymentRecord))
            ).scalar_one() == 1
            assert (await db.get(ContentItem, "prob1")).interested_investors_count == 1
            assert (await db.get(UserProfile, "pc1")).deals_count == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_deals_different_investors(
        self, deal_service: DealTransactionService, session_factory: Any
    ) -> None:
        """Every investor's deal is counted on the item and on the creator."""
        async with session_factory() as db:
            investors = [await db.get(UserProfile, uid) for uid in ("inv1", "u1", "u2", "sc1")]

        tasks = [
            deal_service.create_deal(inv, "pc1", "prob1", PROBLEM_TITLE, "problem", 50)
            for inv in investors
        ]
        results = await asyncio.gather(*tasks)

        assert len(set(results)) == 4
        async with session_factory() as db:
            assert (await db.get(ContentItem, "prob1")).interested_investors_count == 4
            assert (await db.get(UserProfile, "pc1")).deals_count == 4

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_upvotes_different_users(
        self, upvote_service: UpvoteToggleService, session_factory: Any
    ) -> None:
        """No upvote or point is lost under concurrent toggles."""
        voters = ["inv1", "sc1", "u1", "u2", "admin1"]

        results = await asyncio.gather(
            *(upvote_service.toggle_upvote("problem", "prob1", uid) for uid in voters)
        )

        assert all(r.added for r in results)
        assert sorted(r.upvotes for r in results)[-1] == len(voters)
        async with session_factory() as db:
            assert (await db.get(ContentItem, "prob1")).upvotes == len(voters)
            assert (await db.get(UserProfile, "pc1")).points == 20 * len(voters)

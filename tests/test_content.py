"""
Tests for content submission and notifications.
"""
from typing import Any

import pytest
from sqlalchemy import select

from conftest import PROBLEM_TITLE
from problem2profit.core.content import ContentService
from problem2profit.core.exceptions import InvalidRequestError, NotFoundError
from problem2profit.core.notifications import NotificationService
from problem2profit.database.models import ContentItem, Notification, OutboxEvent, UserProfile


class TestCreateItem:
    """Test suite for ContentService.create_item."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "item_type,points",
        [("problem", 50), ("idea", 10), ("business", 30)],
    )
    async def test_creation_points(
        self, content_service: ContentService, session_factory: Any, item_type: str, points: int
    ) -> None:
        """The creator is granted points by item type."""
        item_id = await content_service.create_item(item_type, "u1", "Shared cargo bikes")

        item = await content_service.get_item(item_id)
        assert item["type"] == item_type
        assert item["creator"]["userId"] == "u1"
        assert item["price_approved"] is True
        async with session_factory() as db:
            assert (await db.get(UserProfile, "u1")).points == points
            assert (await db.execute(select(OutboxEvent))).first() is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_business_keeps_stage(self, content_service: ContentService) -> None:
        item_id = await content_service.create_item(
            "business", "u1", "Repair cafe", stage="Prototype", tags=["circular"]
        )

        item = await content_service.get_item(item_id)
        assert item["stage"] == "Prototype"
        assert item["tags"] == ["circular"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_price_above_threshold_needs_approval(
        self,
        content_service: ContentService,
        notification_service: NotificationService,
    ) -> None:
        """Expensive items stay unapproved and the admins are told."""
        item_id = await content_service.create_item("idea", "u1", "Drone delivery", price=5000)

        item = await content_service.get_item(item_id)
        assert item["price_approved"] is False

        [notification] = await notification_service.list_for_user("admin1")
        assert notification["user_id"] == "admins"
        assert notification["message"] == (
            'Uma submitted a idea "Drone delivery" with a price of $5000, which requires approval.'
        )
        assert notification["link"] == f"/ideas/{item_id}"
        assert await notification_service.list_for_user("u2") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejects_bad_input(self, content_service: ContentService) -> None:
        with pytest.raises(InvalidRequestError):
            await content_service.create_item("solution", "u1", "Not here")
        with pytest.raises(InvalidRequestError):
            await content_service.create_item("problem", "u1", "   ")
        with pytest.raises(InvalidRequestError):
            await content_service.create_item("idea", "u1", "Negative", price=-1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_creator(self, content_service: ContentService) -> None:
        with pytest.raises(NotFoundError):
            await content_service.create_item("problem", "ghost", "Orphan")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_missing_item(self, content_service: ContentService) -> None:
        with pytest.raises(NotFoundError):
            await content_service.get_item("no-such-item")


class TestCreateSolution:
    """Test suite for ContentService.create_solution."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_solution_counts_and_notifies(
        self, content_service: ContentService, session_factory: Any
    ) -> None:
        solution_id = await content_service.create_solution("prob1", "u1", "Insulated backpacks")

        solution = await content_service.get_item(solution_id)
        assert solution["type"] == "solution"
        assert solution["title"] == PROBLEM_TITLE
        assert solution["problem_id"] == "prob1"

        async with session_factory() as db:
            assert (await db.get(ContentItem, "prob1")).solutions_count == 2
            notification = (await db.execute(select(Notification))).scalar_one()
        assert notification.user_id == "pc1"
        assert notification.message == (
            f'Uma proposed a new solution for your problem: "{PROBLEM_TITLE}"'
        )
        assert notification.link == "/problems/prob1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_own_problem_is_not_notified(
        self, content_service: ContentService, session_factory: Any
    ) -> None:
        await content_service.create_solution("prob1", "pc1", "I will fix it myself")

        async with session_factory() as db:
            assert (await db.execute(select(Notification))).first() is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expensive_solution_notifies_admins(
        self, content_service: ContentService, session_factory: Any
    ) -> None:
        await content_service.create_solution("prob1", "u1", "Refrigerated trucks", price=20000)

        async with session_factory() as db:
            recipients = (
                await db.execute(select(Notification.user_id).order_by(Notification.id))
            ).scalars().all()
        assert recipients == ["pc1", "admins"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_solution_needs_a_problem(self, content_service: ContentService) -> None:
        with pytest.raises(NotFoundError, match="Problem not found"):
            await content_service.create_solution("idea1", "u1", "Wrong parent")


class TestPriceApproval:
    """Test suite for the admin price approval workflow."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_approve_item_clears_it_from_queue(self, content_service: ContentService) -> None:
        idea_id = await content_service.create_item("idea", "u1", "Drone delivery", price=5000)
        solution_id = await content_service.create_solution(
            "prob1", "u2", "Refrigerated trucks", price=20000
        )
        await content_service.create_item("idea", "u1", "Cheap idea", price=100)

        pending = await content_service.list_unapproved()
        assert {(i["id"], i["type"]) for i in pending} == {
            (idea_id, "idea"),
            (solution_id, "solution"),
        }

        await content_service.approve_item(idea_id, "admin1")

        assert (await content_service.get_item(idea_id))["price_approved"] is True
        assert [i["id"] for i in await content_service.list_unapproved()] == [solution_id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_approving_twice_is_a_noop(self, content_service: ContentService) -> None:
        idea_id = await content_service.create_item("idea", "u1", "Drone delivery", price=5000)

        await content_service.approve_item(idea_id, "admin1")
        await content_service.approve_item(idea_id, "admin1")

        assert (await content_service.get_item(idea_id))["price_approved"] is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_approve_missing_item(self, content_service: ContentService) -> None:
        with pytest.raises(NotFoundError, match="Item not found"):
            await content_service.approve_item("no-such-item", "admin1")


class TestNotifications:
    """Test suite for NotificationService reads."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mark_all_read(
        self, content_service: ContentService, notification_service: NotificationService
    ) -> None:
        await content_service.create_solution("prob1", "u1", "First")
        await content_service.create_solution("prob1", "u2", "Second")

        notifications = await notification_service.list_for_user("pc1")
        assert [n["read"] for n in notifications] == [False, False]
        assert notifications[0]["message"].startswith("Vic")

        assert await notification_service.mark_all_read("pc1") == 2
        assert await notification_service.mark_all_read("pc1") == 0
        assert all(n["read"] for n in await notification_service.list_for_user("pc1"))

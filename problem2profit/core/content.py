"""Content submission: problems, ideas, businesses and solutions."""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from problem2profit.config import get_settings
from problem2profit.core.exceptions import InvalidRequestError, NotFoundError
from problem2profit.core.side_effects import CONTENT_CREATED, SideEffectDispatcher, build_event
from problem2profit.core.transactions import TransactionRunner
from problem2profit.core.types import ADMINS_RECIPIENT, CREATION_POINTS, ItemType
from problem2profit.database.models import ContentItem, UserProfile

logger = structlog.get_logger(__name__)


def serialize_item(item: ContentItem) -> Dict[str, Any]:
    """Convert a content item row to its API shape."""
    return {
        "id": item.id,
        "type": item.item_type,
        "title": item.title,
        "description": item.description,
        "tags": list(item.tags),
        "creator": item.creator,
        "problem_id": item.problem_id,
        "stage": item.stage,
        "price": item.price,
        "price_approved": item.price_approved,
        "upvotes": item.upvotes,
        "solutions_count": item.solutions_count,
        "interested_investors_count": item.interested_investors_count,
        "is_closed": item.is_closed,
        "created_at": item.created_at.isoformat(),
    }


class ContentService:
    """
    Creates content items together with the counters they affect.

    Prices above the approval threshold leave the item unapproved and
    notify the admins after commit; an admin then approves it.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        runner: Optional[TransactionRunner] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
    ):
        self.runner = runner or TransactionRunner(session_factory=session_factory)
        self.dispatcher = dispatcher or SideEffectDispatcher(session_factory=session_factory)
        self.price_approval_threshold = get_settings().price_approval_threshold

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self.runner.session_factory

    def _check_price(self, price: Optional[int]) -> bool:
        if price is None:
            return True
        if price < 0:
            raise InvalidRequestError(f"Price cannot be negative: {price}")
        return price <= self.price_approval_threshold

    async def _dispatch(self, event_id: Optional[int]) -> None:
        if event_id is not None:
            await self.dispatcher.dispatch(event_id)

    async def get_item(self, item_id: str) -> Dict[str, Any]:
        """Fetch one content item or raise ``NotFoundError``."""
        async with self.session_factory() as db:
            item = await db.get(ContentItem, item_id)
            if item is None:
                raise NotFoundError("Item", item_id)
            return serialize_item(item)

    async def list_unapproved(self) -> List[Dict[str, Any]]:
        """Items and solutions whose price still awaits admin approval, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(ContentItem)
                .where(ContentItem.price_approved == False)  # noqa: E712
                .order_by(ContentItem.created_at, ContentItem.id)
            )
            return [serialize_item(item) for item in result.scalars().all()]

    async def approve_item(self, item_id: str, admin_id: str) -> None:
        """
        Approve the price of an item or solution.

        Approving an already approved item is a no-op.

        Raises:
            NotFoundError: The item does not exist
        """

        async def work(db: AsyncSession) -> bool:
            item = await db.get(ContentItem, item_id)
            if item is None:
                raise NotFoundError("Item", item_id)
            if item.price_approved:
                return False
            item.price_approved = True
            return True

        changed = await self.runner.run(work, "approve_item")
        logger.info("item_approved", item_id=item_id, admin_id=admin_id, changed=changed)

    async def create_item(
        self,
        item_type: str,
        creator_id: str,
        title: str,
        description: str = "",
        tags: Optional[List[str]] = None,
        price: Optional[int] = None,
        stage: Optional[str] = None,
    ) -> str:
        """
        Submit a problem, idea or business and grant the creator points.

        Args:
            item_type: ``problem``, ``idea`` or ``business``
            creator_id: Submitting user
            title: Item title
            description: Item description
            tags: Optional tags
            price: Optional asking price; above the threshold needs approval
            stage: Business stage (businesses only)

        Returns:
            str: New item id
        """
        try:
            kind = ItemType(item_type)
        except ValueError:
            kind = None
        if kind not in CREATION_POINTS:
            raise InvalidRequestError(f"Cannot create item of type {item_type!r}")
        title = title.strip()
        if not title:
            raise InvalidRequestError("Title cannot be empty")
        price_approved = self._check_price(price)
        item_id = uuid.uuid4().hex

        async def work(db: AsyncSession) -> Optional[int]:
            creator = await db.get(UserProfile, creator_id)
            if creator is None:
                raise NotFoundError("User", creator_id)

            db.add(
                ContentItem(
                    id=item_id,
                    item_type=kind.value,
                    title=title,
                    description=description,
                    tags=list(tags or []),
                    creator_id=creator.id,
                    creator=creator.reference(),
                    stage=stage if kind is ItemType.BUSINESS else None,
                    price=price,
                    price_approved=price_approved,
                )
            )
            await db.execute(
                update(UserProfile)
                .where(UserProfile.id == creator.id)
                .values(points=UserProfile.points + CREATION_POINTS[kind])
            )

            if price_approved:
                return None
            event = build_event(
                item_id,
                kind.value,
                CONTENT_CREATED,
                [
                    {
                        "user_id": ADMINS_RECIPIENT,
                        "message": (
                            f'{creator.name} submitted a {kind.value} "{title}" with a price '
                            f"of ${price}, which requires approval."
                        ),
                        "link": f"/{kind.collection}/{item_id}",
                    }
                ],
            )
            db.add(event)
            await db.flush()
            return event.id

        event_id = await self.runner.run(work, f"create_{kind.value}")
        logger.info(
            "item_created",
            item_id=item_id,
            item_type=kind.value,
            creator_id=creator_id,
            price_approved=price_approved,
        )
        await self._dispatch(event_id)
        return item_id

    async def create_solution(
        self,
        problem_id: str,
        creator_id: str,
        description: str,
        price: Optional[int] = None,
    ) -> str:
        """
        Propose a solution to a problem.

        The solution is inserted and the problem's ``solutions_count`` is
        incremented in one transaction. The problem creator (if someone else)
        and, for unapproved prices, the admins are notified after commit.

        Returns:
            str: New solution id
        """
        price_approved = self._check_price(price)
        solution_id = uuid.uuid4().hex

        async def work(db: AsyncSession) -> Optional[int]:
            problem = await db.get(ContentItem, problem_id)
            if problem is None or problem.item_type != ItemType.PROBLEM.value:
                raise NotFoundError("Problem", problem_id)
            creator = await db.get(UserProfile, creator_id)
            if creator is None:
                raise NotFoundError("User", creator_id)

            db.add(
                ContentItem(
                    id=solution_id,
                    item_type=ItemType.SOLUTION.value,
                    title=problem.title,
                    description=description,
                    tags=[],
                    creator_id=creator.id,
                    creator=creator.reference(),
                    problem_id=problem.id,
                    price=price,
                    price_approved=price_approved,
                )
            )
            await db.execute(
                update(ContentItem)
                .where(ContentItem.id == problem.id)
                .values(solutions_count=ContentItem.solutions_count + 1)
            )

            notifications = []
            if problem.creator_id != creator.id:
                notifications.append(
                    {
                        "user_id": problem.creator_id,
                        "message": (
                            f"{creator.name} proposed a new solution for your problem: "
                            f'"{problem.title}"'
                        ),
                        "link": f"/problems/{problem.id}",
                    }
                )
            if not price_approved:
                notifications.append(
                    {
                        "user_id": ADMINS_RECIPIENT,
                        "message": (
                            f'{creator.name} submitted a solution for "{problem.title}" with a '
                            f"price of ${price}, which requires approval."
                        ),
                        "link": f"/solutions/{solution_id}",
                    }
                )
            if not notifications:
                return None

            event = build_event(solution_id, "solution", CONTENT_CREATED, notifications)
            db.add(event)
            await db.flush()
            return event.id

        event_id = await self.runner.run(work, "create_solution")
        logger.info(
            "solution_created",
            solution_id=solution_id,
            problem_id=problem_id,
            creator_id=creator_id,
        )
        await self._dispatch(event_id)
        return solution_id

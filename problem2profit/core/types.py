"""Shared enums, point tables and result types for the core services."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ItemType(Enum):
    """Content item kinds."""

    PROBLEM = "problem"
    SOLUTION = "solution"
    IDEA = "idea"
    BUSINESS = "business"

    @property
    def collection(self) -> str:
        """URL path segment for the item kind."""
        return f"{self.value}s"


class DealItemType(Enum):
    """Item kinds an investor can open a deal on."""

    PROBLEM = "problem"
    IDEA = "idea"
    BUSINESS = "business"


class UpvoteTarget(Enum):
    """Things that can be upvoted. ``INVESTOR`` targets a user profile."""

    PROBLEM = "problem"
    SOLUTION = "solution"
    IDEA = "idea"
    BUSINESS = "business"
    INVESTOR = "investor"

    @property
    def collection(self) -> str:
        """URL path segment for the target kind."""
        return "users" if self is UpvoteTarget.INVESTOR else f"{self.value}s"


class DealStatus(Enum):
    """Deal lifecycle states."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Points granted to the creator per upvote received
UPVOTE_POINTS = {
    UpvoteTarget.PROBLEM: 20,
    UpvoteTarget.SOLUTION: 20,
    UpvoteTarget.BUSINESS: 10,
    UpvoteTarget.IDEA: 0,
    UpvoteTarget.INVESTOR: 0,
}

# Points granted to the creator for submitting an item
CREATION_POINTS = {
    ItemType.PROBLEM: 50,
    ItemType.IDEA: 10,
    ItemType.BUSINESS: 30,
}

ADMINS_RECIPIENT = "admins"
SYSTEM_SENDER = {
    "userId": "system",
    "name": "System",
    "avatarUrl": "",
    "expertise": "System Message",
}
DEAL_STARTED_MESSAGE = "Deal started! You can now chat securely."
INVESTOR_ROLE = "Investor"
ADMIN_ROLE = "Admin"


@dataclass(frozen=True)
class UpvoteResult:
    """Outcome of a toggle: whether the upvote was added and the new count."""

    added: bool
    upvotes: int
    points_delta: int


@dataclass(frozen=True)
class StartDealResult:
    """
    Outcome of starting a deal.

    Exactly one of ``deal_id`` (deal exists or was created for free) and
    ``checkout_url`` (investor must pay first) is set.
    """

    deal_id: Optional[str] = None
    checkout_url: Optional[str] = None
    existing: bool = False


@dataclass(frozen=True)
class MembershipResult:
    """Outcome of starting a membership upgrade."""

    instant: bool
    checkout_url: Optional[str] = None

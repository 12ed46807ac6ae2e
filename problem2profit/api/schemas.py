"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ParticipantReference(BaseModel):
    """Denormalized user reference embedded in deals and messages."""

    userId: str
    name: str
    avatarUrl: str = ""
    expertise: str = ""


class ActionResponse(BaseModel):
    """Tagged success result for commands without a payload."""

    success: bool = True
    message: str


class CreatedResponse(BaseModel):
    """Tagged success result carrying the id of a created record."""

    success: bool = True
    id: str


class StartDealRequest(BaseModel):
    """Request schema for starting a deal on an item."""

    primary_creator_id: str = Field(..., description="Creator of the item")
    item_id: str = Field(..., description="Problem, idea or business id")
    item_title: str = Field(..., min_length=1, description="Deal title")
    item_type: str = Field(..., description="problem, idea or business")
    amount: int = Field(default=0, ge=0, description="Contribution in whole currency units")
    solution_creator_id: Optional[str] = Field(
        default=None, description="Creator of the solution the deal is based on"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "primary_creator_id": "pc1",
                    "item_id": "prob1",
                    "item_title": "Cold chain for rural clinics",
                    "item_type": "problem",
                    "amount": 50,
                }
            ]
        }
    }


class StartDealResponse(BaseModel):
    """Either the deal id (existing or created for free) or a checkout URL."""

    success: bool = True
    deal_id: Optional[str] = None
    checkout_url: Optional[str] = None
    existing: bool = False


class ExistingDealResponse(BaseModel):
    """Result of the existing-deal lookup."""

    deal_id: Optional[str] = None


class DealResponse(BaseModel):
    """Response schema for a deal."""

    id: str
    investor: ParticipantReference
    primary_creator: ParticipantReference
    solution_creator: Optional[ParticipantReference] = None
    related_item_id: str
    title: str
    type: str
    participant_ids: List[str]
    status: str
    created_at: str
    unread_count: int = 0


class UpdateDealStatusRequest(BaseModel):
    """Request schema for completing or cancelling a deal."""

    status: str = Field(..., description="completed or cancelled")

    @field_validator("status")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        """Lower-case the requested status."""
        return v.strip().lower()


class PostMessageRequest(BaseModel):
    """Request schema for posting a chat message."""

    text: str = Field(..., min_length=1, max_length=5000)


class MessageResponse(BaseModel):
    """Response schema for a chat message."""

    id: int
    deal_id: str
    text: str
    sender: ParticipantReference
    created_at: str


class CreateItemRequest(BaseModel):
    """Request schema for submitting a problem, idea or business."""

    title: str = Field(..., min_length=1, max_length=500)
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    price: Optional[int] = Field(default=None, ge=0)
    stage: Optional[str] = Field(default=None, description="Business stage (businesses only)")


class CreateSolutionRequest(BaseModel):
    """Request schema for proposing a solution."""

    description: str = Field(..., min_length=1)
    price: Optional[int] = Field(default=None, ge=0)


class ItemResponse(BaseModel):
    """Response schema for a content item."""

    id: str
    type: str
    title: str
    description: str
    tags: List[str]
    creator: ParticipantReference
    problem_id: Optional[str] = None
    stage: Optional[str] = None
    price: Optional[int] = None
    price_approved: bool
    upvotes: int
    solutions_count: int
    interested_investors_count: int
    is_closed: bool
    created_at: str


class UpvoteResponse(BaseModel):
    """Result of an upvote toggle."""

    success: bool = True
    added: bool
    upvotes: int
    points_delta: int


class NotificationResponse(BaseModel):
    """Response schema for a notification."""

    id: int
    user_id: str
    message: str
    link: str
    read: bool
    created_at: str


class MarkReadResponse(BaseModel):
    """Result of marking notifications as read."""

    success: bool = True
    updated: int


class StartMembershipRequest(BaseModel):
    """Request schema for buying an investor membership."""

    price: int = Field(..., ge=0, description="Price in whole currency units")
    plan: str = "investor"
    payment_frequency: str = "lifetime"


class MembershipResponse(BaseModel):
    """Either an instant upgrade or a checkout URL."""

    success: bool = True
    instant: bool
    checkout_url: Optional[str] = None


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str
    event_id: str
    event_type: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class IntegrityReportResponse(BaseModel):
    """Response schema for the integrity check."""

    checked_at: str
    discrepancy_count: int
    discrepancies: List[Dict[str, Any]]


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str
    checks: Optional[Dict[str, Any]] = None
    message: Optional[str] = None

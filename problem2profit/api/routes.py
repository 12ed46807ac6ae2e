"""
API routes for the marketplace.

Domain errors raised by the services are rendered by the exception handler in
``problem2profit.api.main``; routes only translate requests and responses.
"""
import json
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from problem2profit.core.checkout import CheckoutService
from problem2profit.core.content import ContentService
from problem2profit.core.deals import DealTransactionService
from problem2profit.core.exceptions import PermissionDeniedError
from problem2profit.core.integrity import IntegrityChecker
from problem2profit.core.notifications import NotificationService
from problem2profit.core.upvotes import UpvoteToggleService
from problem2profit.integrations.webhook_handler import (
    WebhookError,
    WebhookHandler,
    WebhookSignatureError,
)
from problem2profit.monitoring.health import HealthCheck

from .dependencies import (
    get_checkout_service,
    get_content_service,
    get_current_admin_id,
    get_current_user_id,
    get_deal_service,
    get_health_check,
    get_integrity_checker,
    get_notification_service,
    get_upvote_service,
    get_webhook_handler,
)
from .schemas import (
    ActionResponse,
    CreatedResponse,
    CreateItemRequest,
    CreateSolutionRequest,
    DealResponse,
    ExistingDealResponse,
    HealthCheckResponse,
    IntegrityReportResponse,
    ItemResponse,
    MarkReadResponse,
    MembershipResponse,
    MessageResponse,
    NotificationResponse,
    PostMessageRequest,
    StartDealRequest,
    StartDealResponse,
    StartMembershipRequest,
    UpdateDealStatusRequest,
    UpvoteResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
deal_router = APIRouter(prefix="/deals", tags=["deals"])
item_router = APIRouter(prefix="/items", tags=["items"])
upvote_router = APIRouter(prefix="/upvotes", tags=["upvotes"])
notification_router = APIRouter(prefix="/notifications", tags=["notifications"])
membership_router = APIRouter(prefix="/membership", tags=["membership"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


@deal_router.post(
    "",
    response_model=StartDealResponse,
    summary="Start a deal",
    description="Return the existing deal, create a free deal, or start a paid checkout",
)
async def start_deal(
    request: StartDealRequest,
    user_id: str = Depends(get_current_user_id),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, Any]:
    """Start a deal on an item as the current investor."""
    logger.info("api_start_deal_request", item_id=request.item_id, item_type=request.item_type)
    result = await checkout.start_deal(
        investor_id=user_id,
        primary_creator_id=request.primary_creator_id,
        item_id=request.item_id,
        item_title=request.item_title,
        item_type=request.item_type,
        amount=request.amount,
        solution_creator_id=request.solution_creator_id,
    )
    return {
        "success": True,
        "deal_id": result.deal_id,
        "checkout_url": result.checkout_url,
        "existing": result.existing,
    }


@deal_router.get(
    "/existing",
    response_model=ExistingDealResponse,
    summary="Find existing deal",
    description="Look up the current investor's deal on an item (polled after checkout)",
)
async def find_existing_deal(
    item_id: str = Query(...),
    user_id: str = Depends(get_current_user_id),
    deals: DealTransactionService = Depends(get_deal_service),
) -> Dict[str, Any]:
    """Find the deal the current user already has on an item."""
    return {"deal_id": await deals.find_existing_deal(item_id, user_id)}


@deal_router.get("", response_model=List[DealResponse], summary="List my deals")
async def list_deals(
    user_id: str = Depends(get_current_user_id),
    deals: DealTransactionService = Depends(get_deal_service),
) -> List[Dict[str, Any]]:
    """Deals the current user participates in, newest first."""
    return await deals.get_deals_for_user(user_id)


@deal_router.get("/{deal_id}", response_model=DealResponse, summary="Get a deal")
async def get_deal(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    deals: DealTransactionService = Depends(get_deal_service),
) -> Dict[str, Any]:
    """Get a deal the current user participates in."""
    deal = await deals.get_deal(deal_id)
    if user_id not in deal["participant_ids"]:
        raise PermissionDeniedError(f"User {user_id} is not a participant of deal {deal_id}")
    return deal


@deal_router.post(
    "/{deal_id}/status",
    response_model=ActionResponse,
    summary="Complete or cancel a deal",
)
async def update_deal_status(
    deal_id: str,
    request: UpdateDealStatusRequest,
    user_id: str = Depends(get_current_user_id),
    deals: DealTransactionService = Depends(get_deal_service),
) -> Dict[str, Any]:
    """Move an active deal to completed or cancelled (investor only)."""
    await deals.update_deal_status(deal_id, request.status, user_id)
    return {"success": True, "message": f"Deal marked as {request.status}."}


@deal_router.get(
    "/{deal_id}/messages",
    response_model=List[MessageResponse],
    summary="List deal messages",
)
async def get_messages(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    deals: DealTransactionService = Depends(get_deal_service),
) -> List[Dict[str, Any]]:
    """Chat messages of a deal, oldest first."""
    return await deals.get_messages(deal_id, user_id)


@deal_router.post(
    "/{deal_id}/messages",
    response_model=CreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Post a deal message",
)
async def post_message(
    deal_id: str,
    request: PostMessageRequest,
    user_id: str = Depends(get_current_user_id),
    deals: DealTransactionService = Depends(get_deal_service),
) -> Dict[str, Any]:
    """Post a chat message as the current user."""
    message_id = await deals.post_message(deal_id, user_id, request.text)
    return {"success": True, "id": str(message_id)}


@deal_router.post("/{deal_id}/read", response_model=ActionResponse, summary="Mark deal as read")
async def mark_deal_as_read(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    deals: DealTransactionService = Depends(get_deal_service),
) -> Dict[str, Any]:
    """Clear the current user's unread counter for a deal."""
    await deals.mark_deal_as_read(user_id, deal_id)
    return {"success": True, "message": "Deal marked as read."}


@item_router.post(
    "/{item_type}",
    response_model=CreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a problem, idea or business",
)
async def create_item(
    item_type: str,
    request: CreateItemRequest,
    user_id: str = Depends(get_current_user_id),
    content: ContentService = Depends(get_content_service),
) -> Dict[str, Any]:
    """Submit a content item as the current user."""
    item_id = await content.create_item(
        item_type=item_type,
        creator_id=user_id,
        title=request.title,
        description=request.description,
        tags=request.tags,
        price=request.price,
        stage=request.stage,
    )
    return {"success": True, "id": item_id}


@item_router.get("/{item_id}", response_model=ItemResponse, summary="Get a content item")
async def get_item(
    item_id: str,
    content: ContentService = Depends(get_content_service),
) -> Dict[str, Any]:
    """Get a content item by id."""
    return await content.get_item(item_id)


@item_router.post(
    "/{problem_id}/solutions",
    response_model=CreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Propose a solution",
)
async def create_solution(
    problem_id: str,
    request: CreateSolutionRequest,
    user_id: str = Depends(get_current_user_id),
    content: ContentService = Depends(get_content_service),
) -> Dict[str, Any]:
    """Propose a solution to a problem as the current user."""
    solution_id = await content.create_solution(
        problem_id=problem_id,
        creator_id=user_id,
        description=request.description,
        price=request.price,
    )
    return {"success": True, "id": solution_id}


@upvote_router.post(
    "/{target_type}/{target_id}",
    response_model=UpvoteResponse,
    summary="Toggle an upvote",
)
async def toggle_upvote(
    target_type: str,
    target_id: str,
    user_id: str = Depends(get_current_user_id),
    upvotes: UpvoteToggleService = Depends(get_upvote_service),
) -> Dict[str, Any]:
    """Add the current user's upvote, or remove it if already present."""
    result = await upvotes.toggle_upvote(target_type, target_id, user_id)
    return {
        "success": True,
        "added": result.added,
        "upvotes": result.upvotes,
        "points_delta": result.points_delta,
    }


@notification_router.get(
    "", response_model=List[NotificationResponse], summary="List my notifications"
)
async def list_notifications(
    user_id: str = Depends(get_current_user_id),
    notifications: NotificationService = Depends(get_notification_service),
) -> List[Dict[str, Any]]:
    """Latest notifications of the current user, newest first."""
    return await notifications.list_for_user(user_id)


@notification_router.post(
    "/read", response_model=MarkReadResponse, summary="Mark all notifications as read"
)
async def mark_notifications_read(
    user_id: str = Depends(get_current_user_id),
    notifications: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    """Mark every unread notification of the current user as read."""
    return {"success": True, "updated": await notifications.mark_all_read(user_id)}


@membership_router.post("", response_model=MembershipResponse, summary="Buy investor membership")
async def start_membership(
    request: StartMembershipRequest,
    user_id: str = Depends(get_current_user_id),
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, Any]:
    """Upgrade instantly or start a membership checkout."""
    result = await checkout.start_membership(
        user_id, request.price, plan=request.plan, payment_frequency=request.payment_frequency
    )
    return {"success": True, "instant": result.instant, "checkout_url": result.checkout_url}


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Handle Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    webhook_handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Unverifiable payloads get 400, processing failures 500, everything else
    200 so Stripe stops redelivering.
    """
    body = await request.body()

    if not stripe_signature:
        logger.error("api_webhook_missing_signature")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature")

    try:
        event = webhook_handler.verify_signature(body, stripe_signature)
    except WebhookSignatureError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info("api_webhook_received", event_id=event.id, event_type=event.type)
    data_object = json.loads(body).get("data", {}).get("object", {})

    try:
        return await webhook_handler.process_event(event.id, event.type, data_object)
    except WebhookError as e:
        logger.error("api_webhook_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )


@admin_router.get(
    "/integrity",
    response_model=IntegrityReportResponse,
    summary="Run integrity check",
    description="Recompute counters from their source rows and report discrepancies",
)
async def run_integrity_check(
    admin_id: str = Depends(get_current_admin_id),
    checker: IntegrityChecker = Depends(get_integrity_checker),
) -> Dict[str, Any]:
    """Run the counter integrity check (admins only)."""
    logger.info("api_integrity_check_started", admin_id=admin_id)
    return await checker.run()


@admin_router.get(
    "/items/unapproved",
    response_model=List[ItemResponse],
    summary="List items awaiting price approval",
)
async def list_unapproved_items(
    admin_id: str = Depends(get_current_admin_id),
    content: ContentService = Depends(get_content_service),
) -> List[Dict[str, Any]]:
    """Items and solutions priced above the approval threshold (admins only)."""
    return await content.list_unapproved()


@admin_router.post(
    "/items/{item_id}/approve",
    response_model=ActionResponse,
    summary="Approve an item's price",
)
async def approve_item(
    item_id: str,
    admin_id: str = Depends(get_current_admin_id),
    content: ContentService = Depends(get_content_service),
) -> Dict[str, Any]:
    """Approve the price of an item or solution (admins only)."""
    await content.approve_item(item_id, admin_id)
    return {"success": True, "message": "Item approved!"}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint; 503 when a dependency is down."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

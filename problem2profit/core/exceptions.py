"""
Domain exception classes for the Problem2Profit marketplace.

Every exception carries:
1. An error code (for client handling)
2. A user message (safe to show to users)
3. An HTTP status code (for API responses)
4. Whether retrying the whole operation is safe

The API layer renders them as a tagged failure result; services never turn
a precondition or transactional failure into a silent no-op.
"""

from typing import Any, Dict, Optional


class Problem2ProfitError(Exception):
    """Base exception for all marketplace errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        user_message: Optional[str] = None,
        http_status: int = 500,
        retryable: bool = False,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.user_message = user_message or message
        self.http_status = http_status
        self.retryable = retryable
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a tagged failure result for API responses."""
        return {
            "success": False,
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
                "retryable": self.retryable,
            },
        }


# ============================================================================
# PRECONDITION ERRORS (no mutation occurred)
# ============================================================================

class NotFoundError(Problem2ProfitError):
    """A referenced user, item or deal does not exist."""

    def __init__(self, resource: str, resource_id: str, **kwargs: Any):
        super().__init__(
            message=f"{resource} not found: {resource_id}",
            error_code=f"{resource.lower().replace(' ', '_')}_not_found",
            user_message=f"{resource} not found.",
            http_status=404,
            resource=resource,
            resource_id=resource_id,
            **kwargs,
        )


class SelfActionError(Problem2ProfitError):
    """A user tried to upvote their own content."""

    def __init__(self, user_id: str, **kwargs: Any):
        super().__init__(
            message=f"User {user_id} cannot upvote their own content",
            error_code="self_action_forbidden",
            user_message="You cannot upvote your own content.",
            http_status=400,
            user_id=user_id,
            **kwargs,
        )


class InvalidStateError(Problem2ProfitError):
    """Illegal deal status transition."""

    def __init__(self, current_status: str, requested_status: str, **kwargs: Any):
        super().__init__(
            message=f"Cannot transition deal from {current_status} to {requested_status}",
            error_code="invalid_state_transition",
            user_message=f"A {current_status} deal cannot be marked as {requested_status}.",
            http_status=409,
            current_status=current_status,
            requested_status=requested_status,
            **kwargs,
        )


class PermissionDeniedError(Problem2ProfitError):
    """The caller is not allowed to perform the action."""

    def __init__(self, message: str, user_message: Optional[str] = None, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="permission_denied",
            user_message=user_message or "You are not allowed to do this.",
            http_status=403,
            **kwargs,
        )


class InvalidRequestError(Problem2ProfitError):
    """Input failed validation (amounts, types, webhook metadata)."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="invalid_request",
            http_status=400,
            **kwargs,
        )


# ============================================================================
# TRANSACTION ERRORS
# ============================================================================

class TransactionConflictError(Problem2ProfitError):
    """
    The store detected write contention.

    The transaction rolled back completely, so retrying the whole operation
    is safe.
    """

    def __init__(self, operation: str, detail: str = "", **kwargs: Any):
        super().__init__(
            message=f"Write conflict during {operation}: {detail}".rstrip(": "),
            error_code="transaction_conflict",
            user_message="The item was being changed by someone else. Please try again.",
            http_status=409,
            retryable=True,
            operation=operation,
            **kwargs,
        )


class OperationTimeoutError(Problem2ProfitError):
    """The operation did not complete within the operation-level timeout."""

    def __init__(self, operation: str, timeout_seconds: float, **kwargs: Any):
        super().__init__(
            message=f"{operation} timed out after {timeout_seconds}s",
            error_code="operation_timeout",
            user_message="The request took too long. Please try again.",
            http_status=503,
            retryable=True,
            operation=operation,
            timeout_seconds=timeout_seconds,
            **kwargs,
        )


class SideEffectError(Problem2ProfitError):
    """
    A post-commit step (notification, chat seeding, unread counter) failed.

    Logged, never surfaced: the primary operation already committed.
    """

    def __init__(self, step: str, event_id: int, cause: Exception, **kwargs: Any):
        super().__init__(
            message=f"Side effect {step} failed for outbox event {event_id}: {cause}",
            error_code="side_effect_failed",
            http_status=500,
            retryable=True,
            step=step,
            event_id=event_id,
            **kwargs,
        )
        self.cause = cause


# ============================================================================
# PAYMENT ERRORS
# ============================================================================

class PaymentGatewayError(Problem2ProfitError):
    """The payment gateway could not create a checkout session."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="payment_gateway_error",
            user_message="Could not connect to payment provider. Please try again.",
            http_status=502,
            retryable=True,
            **kwargs,
        )


class ReconciliationRequiredError(Problem2ProfitError):
    """
    A payment was captured but the deal or membership it paid for could not
    be recorded.

    Money has already moved, so this needs manual reconciliation and is
    reported separately from ordinary failures.
    """

    def __init__(self, message: str, purchase: str = "deal", **kwargs: Any):
        if purchase == "membership":
            error_code = "membership_upgrade_after_payment_failed"
            user_message = (
                "Your payment was received but your membership could not be upgraded. "
                "Our team has been notified."
            )
        else:
            error_code = "deal_creation_after_payment_failed"
            user_message = (
                "Your payment was received but the deal could not be created. "
                "Our team has been notified."
            )
        super().__init__(
            message=message,
            error_code=error_code,
            user_message=user_message,
            http_status=500,
            requires_reconciliation=True,
            purchase=purchase,
            **kwargs,
        )

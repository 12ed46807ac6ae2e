"""
Core marketplace logic: transactional services and their side effects.

``problem2profit.core.checkout`` depends on the Stripe integration and is
imported from its module directly.
"""
from .content import ContentService
from .deals import DealTransactionService
from .integrity import IntegrityChecker
from .membership import MembershipService
from .notifications import NotificationService
from .outbox import OutboxPublisher
from .side_effects import SideEffectDispatcher
from .transactions import TransactionRunner
from .upvotes import UpvoteToggleService

__all__ = [
    "ContentService",
    "DealTransactionService",
    "IntegrityChecker",
    "MembershipService",
    "NotificationService",
    "OutboxPublisher",
    "SideEffectDispatcher",
    "TransactionRunner",
    "UpvoteToggleService",
]

"""Database package for Problem2Profit."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    Base,
    ContentItem,
    Deal,
    DealMessage,
    DealParticipant,
    Notification,
    OutboxEvent,
    PaymentRecord,
    UnreadDealCount,
    Upvote,
    UserProfile,
)

__all__ = [
    "Base",
    "ContentItem",
    "Deal",
    "DealMessage",
    "DealParticipant",
    "Notification",
    "OutboxEvent",
    "PaymentRecord",
    "UnreadDealCount",
    "Upvote",
    "UserProfile",
    "close_db",
    "get_session_factory",
    "init_db",
]

"""SQLAlchemy database models for the Problem2Profit marketplace."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class UserProfile(Base):
    """
    User profiles.

    Point and counter columns are only mutated by the transactional services
    in ``problem2profit.core`` using atomic increments.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    expertise: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="User")
    is_premium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    upvotes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deals_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deals_completed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deals_cancelled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("upvotes >= 0", name="user_upvotes_non_negative"),
        CheckConstraint("deals_count >= 0", name="deals_count_non_negative"),
        Index("idx_users_points_desc", "points", postgresql_ops={"points": "DESC"}),
    )

    def reference(self) -> Dict[str, str]:
        """Denormalized reference embedded in deals, items and messages."""
        return {
            "userId": self.id,
            "name": self.name,
            "avatarUrl": self.avatar_url,
            "expertise": self.expertise,
        }

    def __repr__(self) -> str:
        """String representation of UserProfile."""
        return f"<UserProfile(id={self.id}, role={self.role}, points={self.points})>"


class ContentItem(Base):
    """
    Problems, solutions, ideas and businesses.

    ``upvotes`` always equals the number of ``Upvote`` rows targeting the item.
    """

    __tablename__ = "content_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    item_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[List[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    creator_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    creator: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    problem_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    upvotes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    solutions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    interested_investors_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "item_type IN ('problem', 'solution', 'idea', 'business')",
            name="valid_item_type",
        ),
        CheckConstraint("upvotes >= 0", name="item_upvotes_non_negative"),
        CheckConstraint(
            "interested_investors_count >= 0", name="interested_investors_non_negative"
        ),
        Index("idx_content_items_type_created", "item_type", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of ContentItem."""
        return (
            f"<ContentItem(id={self.id}, type={self.item_type}, "
            f"upvotes={self.upvotes})>"
        )


class Upvote(Base):
    """Membership rows of an item's (or investor's) ``upvotedBy`` set."""

    __tablename__ = "upvotes"

    target_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (Index("idx_upvotes_user", "user_id"),)


class Deal(Base):
    """
    Deals between an investor and the creator(s) of an item.

    Immutable once created except for ``status``.
    """

    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    investor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    investor: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    primary_creator: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    solution_creator: Mapped[Dict[str, Any] | None] = mapped_column(
        JSONDocument, nullable=True
    )
    related_item_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    participant_ids: Mapped[List[str]] = mapped_column(JSONDocument, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("investor_id", "related_item_id", name="uq_deal_investor_item"),
        CheckConstraint(
            "status IN ('active', 'completed', 'cancelled')", name="valid_deal_status"
        ),
        CheckConstraint("type IN ('problem', 'idea', 'business')", name="valid_deal_type"),
    )

    def __repr__(self) -> str:
        """String representation of Deal."""
        return f"<Deal(id={self.id}, item={self.related_item_id}, status={self.status})>"


class DealParticipant(Base):
    """One row per participant of a deal; mirrors ``Deal.participant_ids``."""

    __tablename__ = "deal_participants"

    deal_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    __table_args__ = (Index("idx_deal_participants_user", "user_id"),)


class DealMessage(Base):
    """Chat messages of a deal, including system-authored ones."""

    __tablename__ = "deal_messages"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    sender: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class UnreadDealCount(Base):
    """Per-user unread message counter for a deal (``unreadDealMessages``)."""

    __tablename__ = "deal_unread_counts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    deal_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Notification(Base):
    """Append-only user notifications. ``user_id`` may be ``"admins"``."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str] = mapped_column(String(1024), nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (Index("idx_notifications_user_read", "user_id", "read"),)


class PaymentRecord(Base):
    """
    Payment log used for reconciliation.

    One row per completed deal creation or membership purchase. Amount may
    be 0 when payments are disabled.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_avatar_url: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    related_deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    related_deal_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_frequency: Mapped[str | None] = mapped_column(String(50), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), index=True
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint("type IN ('deal_creation', 'membership')", name="valid_payment_type"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentRecord."""
        return f"<PaymentRecord(id={self.id}, type={self.type}, amount={self.amount})>"


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Written in the same transaction as the domain change; the post-commit
    side effects it describes are applied step by step and recorded in
    ``completed_steps`` so a replay never repeats a finished step.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    completed_steps: Mapped[List[str]] = mapped_column(
        JSONDocument, nullable=False, default=list
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),)

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )

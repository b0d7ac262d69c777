"""
SQLAlchemy ORM models for conversations, messages and notifications.

User accounts live in the platform's identity service; ``user_id`` columns hold
the subject of the bearer token and carry no foreign key.
"""

import uuid
from sqlalchemy import (
    Column,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    Index,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from courtside.utils.datetime_utils import utcnow
from courtside.database.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def generate_id() -> str:
    return uuid.uuid4().hex


class Conversation(Base):
    """Conversation thread with a denormalized last-message cache."""

    __tablename__ = "conversations"

    id = Column(String(32), primary_key=True, default=generate_id)
    type = Column(String(20), nullable=False, default="direct")  # ConversationType enum value
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    is_group = Column(Boolean, default=False, nullable=False)
    related_entity_type = Column(String(50), nullable=True)  # 'tournament', 'booking'
    related_entity_id = Column(String(64), nullable=True)
    created_by = Column(String(64), nullable=False)
    last_message_id = Column(String(32), nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    last_message_preview = Column(String(100), nullable=True)
    settings = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_conversations_last_message_at", "last_message_at"),
        Index("idx_conversations_related_entity", "related_entity_type", "related_entity_id"),
    )


class ConversationParticipant(Base):
    """Conversation membership. Leaving deactivates the row instead of deleting it."""

    __tablename__ = "conversation_participants"

    id = Column(String(32), primary_key=True, default=generate_id)
    conversation_id = Column(String(32), ForeignKey("conversations.id"), nullable=False)
    user_id = Column(String(64), nullable=False)
    role = Column(String(20), nullable=False, default="member")  # 'admin', 'member'
    joined_at = Column(DateTime(timezone=True), default=utcnow)
    left_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant_conversation_user"),
        Index("idx_participants_user_id", "user_id"),
    )


class Message(Base):
    """Chat message. Deletion is soft; edits never move a message between conversations."""

    __tablename__ = "messages"

    id = Column(String(32), primary_key=True, default=generate_id)
    conversation_id = Column(String(32), ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String(64), nullable=False)
    content = Column(Text, nullable=False, default="")
    message_type = Column(String(20), nullable=False, default="text")  # MessageType enum value
    attachments = Column(JSONType, nullable=False, default=list)
    location = Column(JSONType, nullable=True)
    match_invite = Column(JSONType, nullable=True)
    is_edited = Column(Boolean, default=False, nullable=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    read_by = Column(JSONType, nullable=False, default=list)  # [{userId, readAt}]
    reactions = Column(JSONType, nullable=False, default=list)  # [{userId, emoji, createdAt}]
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
        Index("idx_messages_sender_id", "sender_id"),
    )


class Notification(Base):
    """User notifications for the in-app inbox."""

    __tablename__ = "notifications"

    id = Column(String(32), primary_key=True, default=generate_id)
    user_id = Column(String(64), nullable=False)
    type = Column(String(20), nullable=False)  # NotificationType enum value
    category = Column(String(20), nullable=False, default="info")  # NotificationCategory enum value
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    action_text = Column(String(100), nullable=True)
    action_url = Column(String(500), nullable=True)  # Navigation target
    related_entity_type = Column(String(50), nullable=True)
    related_entity_id = Column(String(64), nullable=True)
    data = Column(JSONType, nullable=True)  # Flexible metadata (conversation_id, message_id, etc.)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    channels = Column(JSONType, nullable=False, default=dict)
    delivery_status = Column(JSONType, nullable=False, default=dict)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_notifications_user_unread", "user_id", "is_read", "created_at"),
        Index("idx_notifications_user_created", "user_id", "created_at"),
    )


class NotificationPreference(Base):
    """Per-user notification preferences."""

    __tablename__ = "notification_preferences"

    id = Column(String(32), primary_key=True, default=generate_id)
    user_id = Column(String(64), nullable=False, unique=True)
    global_enabled = Column(Boolean, default=True, nullable=False)
    quiet_hours_enabled = Column(Boolean, default=False, nullable=False)
    quiet_hours_start = Column(String(5), nullable=False, default="22:00")
    quiet_hours_end = Column(String(5), nullable=False, default="08:00")
    preferences = Column(JSONType, nullable=False, default=dict)  # {type: {inApp, email, sms, push}}
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

"""
Pydantic models for realtime payloads and API request/response validation.

The same models are used by the client library and the event router. Fields are
snake_case in Python and camelCase on the wire (``conversationId``, ``readBy``).
"""

import enum
from datetime import datetime
from typing import Optional, List, Dict, Literal
from pydantic import BaseModel, Field, ConfigDict, model_validator
from pydantic.alias_generators import to_camel


class MessageType(str, enum.Enum):
    """Message type enum."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"
    LOCATION = "location"
    MATCH_INVITE = "match_invite"


class ConversationType(str, enum.Enum):
    """Conversation type enum."""

    DIRECT = "direct"
    GROUP = "group"
    TOURNAMENT = "tournament"
    COURT_BOOKING = "court_booking"


class ParticipantRole(str, enum.Enum):
    """Conversation participant role enum."""

    ADMIN = "admin"
    MEMBER = "member"


class PresenceStatus(str, enum.Enum):
    """User presence status enum."""

    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class NotificationType(str, enum.Enum):
    """Notification type enum."""

    SYSTEM = "system"
    TOURNAMENT = "tournament"
    BOOKING = "booking"
    MESSAGE = "message"
    MATCH = "match"
    PAYMENT = "payment"
    MAINTENANCE = "maintenance"


class NotificationCategory(str, enum.Enum):
    """Notification severity category enum."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    URGENT = "urgent"


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_wire(self) -> dict:
        """Serialize to a JSON-compatible dict with camelCase keys."""
        return self.model_dump(by_alias=True, mode="json")


# ============================================================================
# Messages
# ============================================================================


class Attachment(CamelModel):
    """File or image attached to a message."""

    type: Literal["image", "file"]
    url: str
    filename: str
    size: int = Field(ge=0)


class Location(CamelModel):
    """Shared location payload."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: str = ""


class MatchInvite(CamelModel):
    """Invitation to play a match on a court."""

    court_id: str
    facility_id: str
    proposed_time: datetime
    duration: int = Field(gt=0)  # minutes


class ReadReceipt(CamelModel):
    """A single user's read receipt on a message."""

    user_id: str
    read_at: datetime


class Reaction(CamelModel):
    """A single user's emoji reaction on a message."""

    user_id: str
    emoji: str
    created_at: datetime


class Message(CamelModel):
    """Chat message."""

    id: str
    conversation_id: str
    sender_id: str
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    attachments: List[Attachment] = Field(default_factory=list)
    location: Optional[Location] = None
    match_invite: Optional[MatchInvite] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    read_by: List[ReadReceipt] = Field(default_factory=list)
    reactions: List[Reaction] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None


class SendMessageRequest(CamelModel):
    """Payload of ``message:send``."""

    conversation_id: str
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    attachments: List[Attachment] = Field(default_factory=list)
    location: Optional[Location] = None
    match_invite: Optional[MatchInvite] = None

    @model_validator(mode="after")
    def check_type_specific_fields(self):
        """Attachments, location and match invites only travel with their own type."""
        if self.attachments and self.message_type not in (MessageType.IMAGE, MessageType.FILE):
            raise ValueError("attachments are only allowed on image or file messages")
        if self.location is not None and self.message_type != MessageType.LOCATION:
            raise ValueError("location is only allowed on location messages")
        if self.message_type == MessageType.LOCATION and self.location is None:
            raise ValueError("location messages require a location")
        if self.match_invite is not None and self.message_type != MessageType.MATCH_INVITE:
            raise ValueError("matchInvite is only allowed on match_invite messages")
        if self.message_type == MessageType.MATCH_INVITE and self.match_invite is None:
            raise ValueError("match_invite messages require a matchInvite")
        if self.message_type == MessageType.TEXT and not self.content.strip():
            raise ValueError("content is required for text messages")
        return self


class EditMessageRequest(CamelModel):
    """Payload of ``message:edit``."""

    message_id: str
    content: str = Field(min_length=1)


class MessageListResponse(CamelModel):
    """Paginated message history, oldest first."""

    messages: List[Message]
    total: int
    page: int
    total_pages: int


# ============================================================================
# Conversations
# ============================================================================


class Participant(CamelModel):
    """Conversation membership row. Leaving deactivates it; it is never removed."""

    user_id: str
    role: ParticipantRole = ParticipantRole.MEMBER
    joined_at: Optional[datetime] = None
    left_at: Optional[datetime] = None
    is_active: bool = True


class ConversationSettings(CamelModel):
    """Per-conversation switches."""

    allow_file_sharing: bool = True
    allow_location_sharing: bool = True
    mute_notifications: bool = False
    archive_after_days: Optional[int] = None


class Conversation(CamelModel):
    """Conversation thread with denormalized last-message cache."""

    id: str
    type: ConversationType = ConversationType.DIRECT
    name: Optional[str] = None
    description: Optional[str] = None
    participants: List[Participant] = Field(default_factory=list)
    is_group: bool = False
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    last_message_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_message_preview: Optional[str] = None
    settings: ConversationSettings = Field(default_factory=ConversationSettings)
    is_active: bool = True
    is_archived: bool = False
    archived_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    unread_count: int = 0


class CreateConversationRequest(CamelModel):
    """Payload of ``conversation:create``."""

    type: ConversationType = ConversationType.DIRECT
    participant_ids: List[str] = Field(min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    settings: Optional[ConversationSettings] = None

    @model_validator(mode="after")
    def check_group_name(self):
        """Group conversations need a name."""
        if self.type == ConversationType.GROUP and not (self.name or "").strip():
            raise ValueError("name is required for group conversations")
        return self


# ============================================================================
# Notifications
# ============================================================================


class ChannelFlags(CamelModel):
    """Which delivery channels a notification uses (or a preference enables)."""

    in_app: bool = True
    email: bool = False
    sms: bool = False
    push: bool = False


class ChannelDelivery(CamelModel):
    """Delivery outcome for one channel."""

    delivered: bool = False
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None


class DeliveryStatus(CamelModel):
    """Per-channel delivery outcome."""

    in_app: ChannelDelivery = Field(default_factory=ChannelDelivery)
    email: ChannelDelivery = Field(default_factory=ChannelDelivery)
    sms: ChannelDelivery = Field(default_factory=ChannelDelivery)
    push: ChannelDelivery = Field(default_factory=ChannelDelivery)


class Notification(CamelModel):
    """In-app notification. Only ``is_read``/``read_at`` change after creation."""

    id: str
    user_id: str
    type: NotificationType = NotificationType.SYSTEM
    category: NotificationCategory = NotificationCategory.INFO
    title: str
    message: str
    action_text: Optional[str] = None
    action_url: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    metadata: Optional[dict] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    channels: ChannelFlags = Field(default_factory=ChannelFlags)
    delivery_status: DeliveryStatus = Field(default_factory=DeliveryStatus)
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class NotificationListResponse(CamelModel):
    """Paginated notification list response."""

    notifications: List[Notification]
    total_count: int
    unread_count: int
    page: int
    total_pages: int


class UnreadCountResponse(BaseModel):
    """Unread notification count response."""

    count: int


# 24-hour "HH:MM"
CLOCK_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class NotificationPreferences(CamelModel):
    """Per-user notification preferences keyed by notification type."""

    user_id: Optional[str] = None
    global_enabled: bool = True
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = Field(default="22:00", pattern=CLOCK_PATTERN)
    quiet_hours_end: str = Field(default="08:00", pattern=CLOCK_PATTERN)
    preferences: Dict[NotificationType, ChannelFlags] = Field(default_factory=dict)

    def channels_for(self, notification_type: NotificationType) -> ChannelFlags:
        """Channel switches for a type; types without an entry use the defaults."""
        return self.preferences.get(notification_type, ChannelFlags())


# ============================================================================
# Ephemeral state
# ============================================================================


class TypingUser(CamelModel):
    """A remote user currently typing in a conversation."""

    user_id: str
    username: Optional[str] = None
    timestamp: datetime


class UserPresence(CamelModel):
    """Latest known presence for a user; replaced wholesale on update."""

    user_id: str
    status: PresenceStatus = PresenceStatus.OFFLINE
    last_seen: Optional[datetime] = None

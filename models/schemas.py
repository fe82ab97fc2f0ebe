"""
Core data models for the message hub worker.
These are the types shared by the normalizer, the dispatch loops and the
reply engine; persistence rows live in database/models.py.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WHATSAPP = "WHATSAPP"
    INSTAGRAM = "INSTAGRAM"
    MESSENGER = "MESSENGER"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, Enum):
    TEXT = "text"
    TEMPLATE = "template"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    INTERACTIVE = "interactive"
    REACTION = "reaction"
    UNSUPPORTED = "unsupported"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ConversationStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class CampaignStatus(str, Enum):
    DRAFT = "DRAFT"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CampaignItemStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"
    DELIVERED = "DELIVERED"
    READ = "READ"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_ITEM_STATUSES

    def can_transition(self, target: "CampaignItemStatus") -> bool:
        return target in _ITEM_TRANSITIONS.get(self, frozenset())


_TERMINAL_ITEM_STATUSES = frozenset({
    CampaignItemStatus.SENT, CampaignItemStatus.FAILED,
    CampaignItemStatus.DELIVERED, CampaignItemStatus.READ,
})

# DELIVERED/READ are applied out-of-band by receipt processing
_ITEM_TRANSITIONS: dict[CampaignItemStatus, frozenset[CampaignItemStatus]] = {
    CampaignItemStatus.PENDING: frozenset({CampaignItemStatus.QUEUED}),
    CampaignItemStatus.QUEUED: frozenset({CampaignItemStatus.SENT, CampaignItemStatus.FAILED}),
    CampaignItemStatus.SENT: frozenset({CampaignItemStatus.DELIVERED}),
    CampaignItemStatus.DELIVERED: frozenset({CampaignItemStatus.READ}),
}


class BadgeStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class PersonaStyle(str, Enum):
    PROFESSIONAL = "PROFESSIONAL"
    FRIENDLY = "FRIENDLY"
    EMPATHETIC = "EMPATHETIC"
    FUNNY = "FUNNY"


class AIProviderName(str, Enum):
    GEMINI = "GEMINI"
    OPENAI = "OPENAI"
    ANTHROPIC = "ANTHROPIC"


class EventKind(str, Enum):
    MESSAGE = "message"
    TEMPLATE_STATUS = "template_status"
    DELIVERY_STATUS = "delivery_status"
    IGNORED = "ignored"
    MALFORMED = "malformed"


class ReplySource(str, Enum):
    AUTOMATION = "automation"
    AI = "ai"


class JobType(str, Enum):
    CAMPAIGN_SEND = "CAMPAIGN_SEND"
    SEND_EVENT_BADGE = "SEND_EVENT_BADGE"


# ──────────────────────────────────────────────────────────────
#  Inbound events
# ──────────────────────────────────────────────────────────────

class InboundEnvelope(BaseModel):
    """Queue entry written by the webhook receiver."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    channel: str
    received_at: Optional[datetime] = Field(default=None, alias="receivedAt")
    payload: dict[str, Any] = {}


class MediaDescriptor(BaseModel):
    media_ref: str = ""                       # provider media id or attachment url
    caption: str = ""
    mime_type: str = "application/octet-stream"
    filename: Optional[str] = None

    def to_body(self) -> dict[str, Any]:
        body = {
            "media_ref": self.media_ref,
            "caption": self.caption,
            "mime_type": self.mime_type,
        }
        if self.filename:
            body["filename"] = self.filename
        return body


class CanonicalMessage(BaseModel):
    """A channel-independent inbound message."""
    channel: ChannelType
    external_id: str
    sender_identifier: str
    message_type: MessageType = MessageType.TEXT
    text_body: str = ""
    media: Optional[MediaDescriptor] = None
    profile_name: Optional[str] = None
    recipient_account_id: Optional[str] = None    # phone_number_id / page id that received it
    timestamp: Optional[datetime] = None
    raw_payload: dict[str, Any] = {}

    @property
    def is_text(self) -> bool:
        return self.message_type == MessageType.TEXT


class TemplateStatusUpdate(BaseModel):
    template_name: str
    language: Optional[str] = None
    status: str
    reason: Optional[str] = None


class NormalizedEvent(BaseModel):
    event_id: str = ""
    kind: EventKind
    channel: Optional[ChannelType] = None
    message: Optional[CanonicalMessage] = None
    template_status: Optional[TemplateStatusUpdate] = None
    reason: str = ""                          # why the event was dropped

    @property
    def is_droppable(self) -> bool:
        return self.kind in (EventKind.IGNORED, EventKind.MALFORMED, EventKind.DELIVERY_STATUS)


# ──────────────────────────────────────────────────────────────
#  Marketing jobs
# ──────────────────────────────────────────────────────────────

class CampaignSendJob(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: JobType = JobType.CAMPAIGN_SEND
    campaign_item_id: str = Field(alias="campaignItemId")
    campaign_id: str = Field(alias="campaignId")
    tenant_id: str = Field(alias="tenantId")
    phone: str
    contact_name: Optional[str] = Field(default=None, alias="contactName")
    template_name: str = Field(alias="templateName")
    template_language: str = Field(default="fr", alias="templateLanguage")
    variant_letter: Optional[str] = Field(default=None, alias="variantLetter")
    components: list[dict[str, Any]] = []


class EventBadgeJob(BaseModel):
    type: JobType = JobType.SEND_EVENT_BADGE
    ticket_id: str
    event_id: str
    tenant_id: str
    attendee_name: str = ""
    attendee_phone: str
    attendee_company: Optional[str] = None
    attendee_role: Optional[str] = None
    tier_name: Optional[str] = None
    event_name: Optional[str] = None
    badge_url: Optional[str] = None
    created_at: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Runtime context
# ──────────────────────────────────────────────────────────────

class ChannelCredentials(BaseModel):
    """Per-tenant provider credentials, falling back to process config."""
    access_token: str = ""
    phone_number_id: str = ""
    page_access_token: str = ""
    instagram_access_token: str = ""

    def merged_over(self, fallback: "ChannelCredentials") -> "ChannelCredentials":
        return ChannelCredentials(
            access_token=self.access_token or fallback.access_token,
            phone_number_id=self.phone_number_id or fallback.phone_number_id,
            page_access_token=self.page_access_token or fallback.page_access_token,
            instagram_access_token=self.instagram_access_token or fallback.instagram_access_token,
        )


class TenantContext(BaseModel):
    """The tenant a loop processes for, resolved once at startup."""
    tenant_id: str
    name: str = ""
    credentials: ChannelCredentials = Field(default_factory=ChannelCredentials)


class Reply(BaseModel):
    body: str
    source: ReplySource
    rule_id: Optional[str] = None
    provider: Optional[AIProviderName] = None


class HistoryMessage(BaseModel):
    role: str                                 # "user" | "assistant"
    content: str

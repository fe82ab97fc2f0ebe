"""
SQLAlchemy ORM models — PostgreSQL in production, SQLite for tests.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; on PG the dialect maps
    JSON to jsonb automatically; on SQLite it serializes to TEXT.
  - String primary keys (uuid), no database-specific sequences.
  - Only the columns the worker reads or writes are mapped; other
    subsystems may own additional columns on the same tables.
  - Uniqueness that the resolver depends on is enforced here, not in code:
    one contact per (tenant, identifier), one open conversation per
    (tenant, contact, channel), one message per (conversation, external id).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, Float, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint, text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────
#  Tenants
# ──────────────────────────────────────────────────────────────

class TenantRow(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    phone_number_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    whatsapp_access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    facebook_config: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Contacts
# ──────────────────────────────────────────────────────────────

class ContactRow(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    wa_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    instagram_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    messenger_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    profile_pic_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[Any] = mapped_column(JSON, default=list)
    location: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    last_interaction: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "wa_id", name="uq_contacts_tenant_wa_id"),
        UniqueConstraint("tenant_id", "instagram_id", name="uq_contacts_tenant_instagram_id"),
        UniqueConstraint("tenant_id", "messenger_id", name="uq_contacts_tenant_messenger_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "tenant_id": self.tenant_id, "wa_id": self.wa_id,
            "instagram_id": self.instagram_id, "messenger_id": self.messenger_id,
            "name": self.name, "tags": self.tags, "location": self.location,
        }


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), ForeignKey("contacts.id"), nullable=False)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="open")
    last_customer_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index(
            "uq_conversations_open_per_channel",
            "tenant_id", "contact_id", "channel",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        Index("ix_conversations_contact", "contact_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    type: Mapped[str] = mapped_column(String(32), default="text")
    body: Mapped[str] = mapped_column(Text, default="")
    external_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="delivered")
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    is_automated: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("conversation_id", "external_id", name="uq_messages_conversation_external_id"),
        Index("ix_messages_conversation_ts", "conversation_id", "created_at"),
        Index("ix_messages_tenant_external_id", "tenant_id", "external_id"),
    )

    def to_event(self) -> dict[str, Any]:
        """Row shape published on the real-time chat stream."""
        created = as_utc(self.created_at)
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "conversation_id": self.conversation_id,
            "direction": self.direction,
            "type": self.type,
            "body": self.body,
            "status": self.status,
            "external_id": self.external_id,
            "is_automated": self.is_automated,
            "created_at": created.isoformat() if created else None,
        }


# ──────────────────────────────────────────────────────────────
#  Templates
# ──────────────────────────────────────────────────────────────

class TemplateRow(Base):
    __tablename__ = "templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    language: Mapped[str] = mapped_column(String(16), default="fr")
    meta_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_templates_tenant_name", "tenant_id", "name"),
    )


# ──────────────────────────────────────────────────────────────
#  Automation & AI configuration (read-only for the worker)
# ──────────────────────────────────────────────────────────────

class AutomationRuleRow(Base):
    __tablename__ = "automation_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    trigger_keyword: Mapped[str] = mapped_column(String(256), nullable=False)
    response_text: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_automation_rules_tenant_active", "tenant_id", "is_active"),
    )


class AIConfigRow(Base):
    __tablename__ = "ai_configs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    system_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    persona_style: Mapped[str] = mapped_column(String(32), default="FRIENDLY")
    emoji_usage: Mapped[bool] = mapped_column(Boolean, default=True)
    creativity_level: Mapped[float] = mapped_column(Float, default=0.7)
    provider: Mapped[str] = mapped_column(String(32), default="GEMINI")
    model: Mapped[str] = mapped_column(String(128), default="gemini-2.0-flash")
    api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class KnowledgeDocRow(Base):
    __tablename__ = "knowledge_docs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    source_name: Mapped[str] = mapped_column(String(512), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class CampaignRow(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(32), default="DRAFT")
    total_contacts: Mapped[int] = mapped_column(Integer, default=0)
    total_sent: Mapped[int] = mapped_column(Integer, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, default=0)
    stats: Mapped[Any] = mapped_column(JSON, default=dict)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class CampaignItemRow(Base):
    __tablename__ = "campaign_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.id"), nullable=False)
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("contacts.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="PENDING")
    message_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("messages.id"), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    variant_letter: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    queued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_campaign_items_campaign_status", "campaign_id", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Event tickets (badge columns only)
# ──────────────────────────────────────────────────────────────

class TicketRow(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attendee_name: Mapped[str] = mapped_column(String(256), default="")
    attendee_phone: Mapped[str] = mapped_column(String(64), default="")
    badge_status: Mapped[str] = mapped_column(String(16), default="PENDING")
    badge_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    badge_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

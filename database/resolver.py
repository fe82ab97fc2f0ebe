"""
Contact / Conversation Resolver.

Maps (tenant, channel identifier) to exactly one contact and one open
conversation per channel. Correctness under concurrent resolvers comes from
the unique constraints in database/models.py: an insert that loses a race
raises IntegrityError inside a SAVEPOINT, and the winner's row is re-read.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import ContactRow, ConversationRow, MessageRow, as_utc
from models.schemas import ChannelType, ConversationStatus

logger = structlog.get_logger()

SESSION_WINDOW = timedelta(hours=24)


@dataclass
class ContactIdentifiers:
    wa_id: Optional[str] = None
    instagram_id: Optional[str] = None
    messenger_id: Optional[str] = None

    @classmethod
    def for_channel(cls, channel: ChannelType, identifier: str) -> "ContactIdentifiers":
        if channel == ChannelType.WHATSAPP:
            return cls(wa_id=identifier)
        if channel == ChannelType.INSTAGRAM:
            return cls(instagram_id=identifier)
        return cls(messenger_id=identifier)

    def present(self) -> dict[str, str]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name)}


@dataclass
class ProfileHints:
    name: Optional[str] = None
    profile_pic_url: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def session_window_open(last_customer_message_at: Optional[datetime], now: datetime = None) -> bool:
    """True while free-form replies are allowed (strictly under 24h)."""
    if last_customer_message_at is None:
        return False
    now = now or _now()
    return now - as_utc(last_customer_message_at) < SESSION_WINDOW


# ── Contacts ──────────────────────────────────────────────────

async def _find_contact(
    session: AsyncSession, tenant_id: str, identifiers: dict[str, str]
) -> Optional[ContactRow]:
    clauses = [getattr(ContactRow, col) == value for col, value in identifiers.items()]
    result = await session.execute(
        select(ContactRow)
        .where(ContactRow.tenant_id == tenant_id, or_(*clauses))
        .order_by(ContactRow.created_at, ContactRow.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _identifier_owner(
    session: AsyncSession, tenant_id: str, column: str, value: str
) -> Optional[str]:
    result = await session.execute(
        select(ContactRow.id).where(
            ContactRow.tenant_id == tenant_id,
            getattr(ContactRow, column) == value,
        )
    )
    return result.scalar_one_or_none()


async def _merge(
    session: AsyncSession,
    contact: ContactRow,
    identifiers: dict[str, str],
    hints: ProfileHints,
    now: datetime,
) -> None:
    """Coalesce: only fill columns that are still empty."""
    for column, value in identifiers.items():
        current = getattr(contact, column)
        if current:
            if current != value:
                logger.info("contact_identifier_kept",
                            contact_id=contact.id, column=column)
            continue
        owner = await _identifier_owner(session, contact.tenant_id, column, value)
        if owner and owner != contact.id:
            # already claimed by another contact; merging rows is a CRM decision
            logger.warning("contact_identifier_conflict",
                           contact_id=contact.id, owner_id=owner, column=column)
            continue
        setattr(contact, column, value)

    if hints.name and not contact.name:
        contact.name = hints.name
    if hints.profile_pic_url and not contact.profile_pic_url:
        contact.profile_pic_url = hints.profile_pic_url
    contact.last_interaction = now


async def resolve(
    session: AsyncSession,
    tenant_id: str,
    identifiers: ContactIdentifiers,
    hints: ProfileHints = None,
    now: datetime = None,
) -> str:
    """Return the id of the single contact owning any of the identifiers."""
    present = identifiers.present()
    if not present:
        raise ValueError("resolve() needs at least one identifier")
    hints = hints or ProfileHints()
    now = now or _now()

    contact = await _find_contact(session, tenant_id, present)
    if contact is None:
        try:
            async with session.begin_nested():
                contact = ContactRow(
                    tenant_id=tenant_id,
                    name=hints.name,
                    profile_pic_url=hints.profile_pic_url,
                    last_interaction=now,
                    tags=[],
                    **present,
                )
                session.add(contact)
            logger.info("contact_created", tenant_id=tenant_id, contact_id=contact.id)
            return contact.id
        except IntegrityError:
            logger.info("contact_insert_raced", tenant_id=tenant_id)
            contact = await _find_contact(session, tenant_id, present)
            if contact is None:
                raise

    await _merge(session, contact, present, hints, now)
    await session.flush()
    return contact.id


# ── Conversations ─────────────────────────────────────────────

async def _find_open_conversation(
    session: AsyncSession, tenant_id: str, contact_id: str, channel: ChannelType
) -> Optional[ConversationRow]:
    result = await session.execute(
        select(ConversationRow).where(
            ConversationRow.tenant_id == tenant_id,
            ConversationRow.contact_id == contact_id,
            ConversationRow.channel == channel.value,
            ConversationRow.status == ConversationStatus.OPEN.value,
        )
    )
    return result.scalar_one_or_none()


async def resolve_conversation(
    session: AsyncSession,
    tenant_id: str,
    contact_id: str,
    channel: ChannelType,
    touch_window: bool = True,
    now: datetime = None,
) -> ConversationRow:
    """
    Return the open conversation for (contact, channel), creating it if needed.

    Inbound callers keep touch_window=True: every inbound event refreshes
    last_customer_message_at, which is what re-opens the 24h window.
    Outbound-only callers (campaign sends) pass False.
    """
    now = now or _now()
    conversation = await _find_open_conversation(session, tenant_id, contact_id, channel)

    if conversation is None:
        try:
            async with session.begin_nested():
                conversation = ConversationRow(
                    tenant_id=tenant_id,
                    contact_id=contact_id,
                    channel=channel.value,
                    status=ConversationStatus.OPEN.value,
                    last_customer_message_at=now if touch_window else None,
                )
                session.add(conversation)
            logger.info("conversation_created",
                        tenant_id=tenant_id, conversation_id=conversation.id,
                        channel=channel.value)
            return conversation
        except IntegrityError:
            logger.info("conversation_insert_raced", contact_id=contact_id)
            conversation = await _find_open_conversation(session, tenant_id, contact_id, channel)
            if conversation is None:
                raise

    if touch_window:
        conversation.last_customer_message_at = now
        conversation.updated_at = now
        await session.flush()
    return conversation


# ── Idempotency ───────────────────────────────────────────────

async def is_duplicate(session: AsyncSession, tenant_id: str, external_id: Optional[str]) -> bool:
    """Best-effort check for an inbound event that was already persisted."""
    if not external_id:
        return False
    result = await session.execute(
        select(MessageRow.id).where(
            MessageRow.tenant_id == tenant_id,
            MessageRow.external_id == external_id,
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None

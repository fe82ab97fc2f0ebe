"""
Inbound Consumer — drains inbound_events and turns each webhook envelope
into persisted conversation state plus an optional automated reply.

Per event:
  Dequeued → Normalized → (Dropped | Resolved) → Persisted → Replied? → Sent? → Committed

Resolve + persist run in one transaction. Reply generation and sending run
after that commit, so a failed reply never undoes a recorded inbound
message. Nothing raised while handling one event stops the loop.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channels.base import ChannelError
from channels.normalizer import EventNormalizer
from channels.sender import ChannelSender
from core.reply_engine import ReplyEngine
from database import repository
from database.message_store import MessageStore
from database.resolver import (
    ContactIdentifiers, ProfileHints, is_duplicate,
    resolve, resolve_conversation, session_window_open,
)
from database.unit_of_work import UnitOfWork
from job_queue.queues import QueueNames, WorkQueue
from models.schemas import (
    CanonicalMessage, ChannelType, EventKind, MessageDirection, MessageStatus,
    MessageType, NormalizedEvent, Reply, TenantContext,
)

logger = structlog.get_logger()

_REPLYABLE_TYPES = (MessageType.TEXT, MessageType.INTERACTIVE)


@dataclass
class InboundResult:
    """What happened to one event; returned for tests and debug logging."""
    event_id: str
    kind: EventKind
    tenant_id: Optional[str] = None
    contact_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    duplicate: bool = False
    reply: Optional[Reply] = None
    reply_message_id: Optional[str] = None
    used_template: bool = False


class InboundConsumer:
    """
    Usage:
        consumer = InboundConsumer(queue, session_factory, normalizer, store, engine, sender, tenant)
        await consumer.start()              # blocks until stop()
        await consumer.start_background()   # returns the task
        await consumer.stop()
    """

    def __init__(
        self,
        queue: WorkQueue,
        session_factory: async_sessionmaker[AsyncSession],
        normalizer: EventNormalizer,
        message_store: MessageStore,
        reply_engine: ReplyEngine,
        sender: ChannelSender,
        tenant: TenantContext,
        queue_name: str = QueueNames.INBOUND,
        pop_timeout: float = 5.0,
        error_backoff: float = 1.0,
        session_template: str = "",
        session_template_language: str = "fr",
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.normalizer = normalizer
        self.message_store = message_store
        self.reply_engine = reply_engine
        self.sender = sender
        self.tenant = tenant
        self.queue_name = queue_name
        self.pop_timeout = pop_timeout
        self.error_backoff = error_backoff
        self.session_template = session_template
        self.session_template_language = session_template_language
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._account_tenants: dict[str, TenantContext] = {}
        self.processed = 0

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Consume until stop() is called; the in-flight event always completes."""
        self._stop.clear()
        logger.info("inbound_consumer_started", queue=self.queue_name, tenant_id=self.tenant.tenant_id)
        while not self._stop.is_set():
            try:
                raw = await self.queue.pop(self.queue_name, timeout=self.pop_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("inbound_queue_error", queue=self.queue_name, error=str(e))
                await asyncio.sleep(self.error_backoff)
                continue
            if raw is None:
                continue
            await self.handle(raw)
        logger.info("inbound_consumer_stopped", processed=self.processed)

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.start(), name="inbound-consumer")
        return self._task

    async def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._task is not None:
            wait_for = timeout if timeout is not None else self.pop_timeout + 30
            try:
                await asyncio.wait_for(self._task, timeout=wait_for)
            except asyncio.TimeoutError:
                logger.warning("inbound_consumer_stop_timeout")
                self._task.cancel()
            self._task = None

    # ── Per-event processing ──────────────────────────────────

    async def handle(self, raw: str) -> Optional[InboundResult]:
        """Process one raw entry; logs and swallows every failure."""
        event = self.normalizer.normalize(raw)
        try:
            if event.kind == EventKind.TEMPLATE_STATUS:
                await self._handle_template_status(event)
                return InboundResult(event_id=event.event_id, kind=event.kind)
            if event.kind != EventKind.MESSAGE or event.message is None:
                logger.info("event_dropped",
                            event_id=event.event_id, kind=event.kind.value, reason=event.reason)
                return InboundResult(event_id=event.event_id, kind=event.kind)
            return await self._handle_message(event)
        except Exception as e:
            logger.error("event_processing_failed",
                         event_id=event.event_id, kind=event.kind.value,
                         error_type=e.__class__.__name__, error=str(e)[:500])
            return None
        finally:
            self.processed += 1

    async def _handle_template_status(self, event: NormalizedEvent) -> None:
        """Apply to the default tenant, else to the single tenant owning the template."""
        update = event.template_status
        async with UnitOfWork(self.session_factory) as uow:
            owners = await repository.template_owners(uow.session, update)
            if self.tenant.tenant_id in owners or len(owners) != 1:
                tenant_id = self.tenant.tenant_id
            else:
                tenant_id = owners[0]
            if len(owners) > 1 and self.tenant.tenant_id not in owners:
                logger.warning("template_status_ambiguous_owner",
                               template=update.template_name, tenants=len(owners))
            await repository.apply_template_status(uow.session, tenant_id, update)

    async def _tenant_for(self, session: AsyncSession, message: CanonicalMessage) -> TenantContext:
        """Route WhatsApp events by receiving phone_number_id; else the default tenant."""
        account = message.recipient_account_id
        if (
            message.channel != ChannelType.WHATSAPP
            or not account
            or account == self.tenant.credentials.phone_number_id
        ):
            return self.tenant
        if account not in self._account_tenants:
            row = await repository.find_tenant_by_account(session, account)
            if row is None:
                # not cached, so a tenant provisioned later is picked up
                return self.tenant
            self._account_tenants[account] = repository.tenant_context(row)
        return self._account_tenants[account]

    async def _handle_message(self, event: NormalizedEvent) -> InboundResult:
        message = event.message
        result = InboundResult(event_id=event.event_id, kind=event.kind)
        now = datetime.now(timezone.utc)

        try:
            async with UnitOfWork(self.session_factory) as uow:
                tenant = await self._tenant_for(uow.session, message)
                result.tenant_id = tenant.tenant_id

                if await is_duplicate(uow.session, tenant.tenant_id, message.external_id):
                    logger.info("event_duplicate_skipped",
                                event_id=event.event_id, external_id=message.external_id)
                    result.duplicate = True
                    return result

                contact_id = await resolve(
                    uow.session,
                    tenant.tenant_id,
                    ContactIdentifiers.for_channel(message.channel, message.sender_identifier),
                    ProfileHints(name=message.profile_name),
                    now=now,
                )
                conversation = await resolve_conversation(
                    uow.session, tenant.tenant_id, contact_id, message.channel,
                    touch_window=True, now=now,
                )
                row = await self.message_store.append_inbound(
                    uow, tenant.tenant_id, conversation.id, message,
                )
                result.contact_id = contact_id
                result.conversation_id = conversation.id
                result.message_id = row.id
                window_anchor = conversation.last_customer_message_at
        except IntegrityError as e:
            # lost a race with a redelivered copy of the same event
            logger.info("event_duplicate_rejected",
                        event_id=event.event_id, external_id=message.external_id,
                        error=str(e.orig)[:200] if e.orig else "")
            result.duplicate = True
            return result

        logger.info("event_persisted",
                    event_id=event.event_id,
                    tenant_id=result.tenant_id,
                    channel=message.channel.value,
                    conversation_id=result.conversation_id,
                    message_id=result.message_id,
                    type=message.message_type.value)

        if message.message_type in _REPLYABLE_TYPES and message.text_body:
            await self._reply(result, tenant, message, window_anchor)
        return result

    # ── Reply ─────────────────────────────────────────────────

    async def _reply(
        self,
        result: InboundResult,
        tenant: TenantContext,
        message: CanonicalMessage,
        window_anchor: Optional[datetime],
    ) -> None:
        try:
            async with self.session_factory() as session:
                reply = await self.reply_engine.generate_reply(
                    session, tenant.tenant_id, result.conversation_id,
                    message.text_body, message.channel,
                )
        except SQLAlchemyError as e:
            logger.error("reply_generation_failed",
                         event_id=result.event_id, error=str(e)[:300])
            return
        if reply is None:
            return

        result.reply = reply
        sent = await self.dispatch_reply(
            tenant, result.conversation_id, message.channel,
            message.sender_identifier, reply, window_anchor,
        )
        if sent is not None:
            result.reply_message_id, result.used_template = sent

    async def dispatch_reply(
        self,
        tenant: TenantContext,
        conversation_id: str,
        channel: ChannelType,
        recipient: str,
        reply: Reply,
        last_customer_message_at: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> Optional[tuple[str, bool]]:
        """
        Send a reply honouring the 24h session rule and record it.
        Returns (message_id, used_template) or None when nothing was sent.
        """
        payload = {"source": reply.source.value}
        if reply.rule_id:
            payload["rule_id"] = reply.rule_id
        if reply.provider:
            payload["provider"] = reply.provider.value

        if session_window_open(last_customer_message_at, now):
            external_id = await self.sender.send(channel, recipient, reply.body, tenant.credentials)
            if external_id is None:
                return None
            message_type, body, used_template = MessageType.TEXT, reply.body, False
        else:
            if channel != ChannelType.WHATSAPP or not self.session_template:
                logger.info("reply_skipped_window_closed",
                            tenant_id=tenant.tenant_id, conversation_id=conversation_id,
                            channel=channel.value)
                return None
            try:
                external_id = await self.sender.send_template(
                    channel, recipient, self.session_template,
                    self.session_template_language, tenant.credentials,
                )
            except ChannelError as e:
                logger.error("reply_template_failed",
                             tenant_id=tenant.tenant_id, conversation_id=conversation_id,
                             error=str(e))
                return None
            payload["template"] = self.session_template
            message_type, body, used_template = MessageType.TEMPLATE, self.session_template, True

        async with UnitOfWork(self.session_factory) as uow:
            row = await self.message_store.append(
                uow,
                tenant_id=tenant.tenant_id,
                conversation_id=conversation_id,
                direction=MessageDirection.OUTBOUND,
                message_type=message_type,
                body=body,
                external_id=external_id,
                status=MessageStatus.SENT,
                payload=payload,
                is_automated=True,
            )
        logger.info("automated_reply_sent",
                    tenant_id=tenant.tenant_id, conversation_id=conversation_id,
                    source=reply.source.value, template=used_template, message_id=row.id)
        return row.id, used_template

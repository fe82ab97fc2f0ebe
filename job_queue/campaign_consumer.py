"""
Campaign Consumer — drains marketing_queue one job at a time.

Job types:
  CAMPAIGN_SEND      template send to one campaign item, with retry/backoff
  SEND_EVENT_BADGE   personalised badge (image or text) for an event ticket

The fixed inter-message delay after every job, whatever its outcome, is
the only throttle on provider traffic and applies to all tenants at once.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channels.sender import ChannelSender
from channels.whatsapp_adapter import normalize_phone
from database import campaigns, repository
from database.message_store import MessageStore
from database.models import CampaignItemRow
from database.resolver import ContactIdentifiers, ProfileHints, resolve, resolve_conversation
from database.unit_of_work import UnitOfWork
from job_queue.queues import QueueNames, WorkQueue
from job_queue.retry import RetryOutcome, RetryPolicy, call_with_retry
from models.schemas import (
    CampaignSendJob, ChannelCredentials, ChannelType, EventBadgeJob, JobType,
    MediaDescriptor, MessageDirection, MessageStatus, MessageType, TenantContext,
)

logger = structlog.get_logger()


@dataclass
class DispatchResult:
    job_type: str
    target_id: str = ""
    status: str = ""
    retries: int = 0
    error: Optional[str] = None
    message_id: Optional[str] = None


def badge_text(job: EventBadgeJob) -> str:
    lines = [f"🎟️ {job.event_name or 'Your event badge'}", f"Name: {job.attendee_name}"]
    if job.attendee_company:
        lines.append(f"Company: {job.attendee_company}")
    if job.attendee_role:
        lines.append(f"Role: {job.attendee_role}")
    if job.tier_name:
        lines.append(f"Pass: {job.tier_name}")
    lines.append(f"Ticket: {job.ticket_id}")
    return "\n".join(lines)


class CampaignConsumer:
    """
    Usage:
        consumer = CampaignConsumer(queue, session_factory, sender, store, tenant)
        await consumer.start_background()
        await consumer.stop()
    """

    def __init__(
        self,
        queue: WorkQueue,
        session_factory: async_sessionmaker[AsyncSession],
        sender: ChannelSender,
        message_store: MessageStore,
        tenant: TenantContext,
        policy: Optional[RetryPolicy] = None,
        queue_name: str = QueueNames.MARKETING,
        pop_timeout: float = 5.0,
        inter_message_delay: float = 0.2,
        error_backoff: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.sender = sender
        self.message_store = message_store
        self.tenant = tenant
        self.policy = policy or RetryPolicy()
        self.queue_name = queue_name
        self.pop_timeout = pop_timeout
        self.inter_message_delay = inter_message_delay
        self.error_backoff = error_backoff
        self._sleep = sleep
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._tenant_cache: dict[str, ChannelCredentials] = {
            tenant.tenant_id: tenant.credentials,
        }
        self.processed = 0

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        self._stop.clear()
        logger.info("campaign_consumer_started",
                    queue=self.queue_name, delay=self.inter_message_delay,
                    max_attempts=self.policy.max_attempts)
        while not self._stop.is_set():
            try:
                raw = await self.queue.pop(self.queue_name, timeout=self.pop_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("campaign_queue_error", queue=self.queue_name, error=str(e))
                await asyncio.sleep(self.error_backoff)
                continue
            if raw is None:
                continue
            await self.handle(raw)
        logger.info("campaign_consumer_stopped", processed=self.processed)

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.start(), name="campaign-consumer")
        return self._task

    async def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._task is not None:
            wait_for = timeout if timeout is not None else self.pop_timeout + 60
            try:
                await asyncio.wait_for(self._task, timeout=wait_for)
            except asyncio.TimeoutError:
                logger.warning("campaign_consumer_stop_timeout")
                self._task.cancel()
            self._task = None

    # ── Dispatch ──────────────────────────────────────────────

    async def handle(self, raw: str) -> Optional[DispatchResult]:
        """Process one job; the inter-message delay always follows."""
        try:
            try:
                data = json.loads(raw)
            except ValueError as e:
                logger.error("marketing_job_malformed", error=str(e))
                return None
            if not isinstance(data, dict):
                logger.error("marketing_job_malformed", error="job is not an object")
                return None

            job_type = data.get("type")
            try:
                if job_type == JobType.CAMPAIGN_SEND.value:
                    return await self.send_campaign_item(CampaignSendJob.model_validate(data))
                if job_type == JobType.SEND_EVENT_BADGE.value:
                    return await self.send_event_badge(EventBadgeJob.model_validate(data))
            except ValidationError as e:
                logger.error("marketing_job_invalid", job_type=job_type, error=str(e)[:300])
                return None

            logger.warning("marketing_job_unknown_type", job_type=job_type)
            return None
        except Exception as e:
            logger.error("marketing_job_failed",
                         error_type=e.__class__.__name__, error=str(e)[:500])
            return None
        finally:
            self.processed += 1
            await self._sleep(self.inter_message_delay)

    async def _credentials_for(self, tenant_id: str) -> ChannelCredentials:
        if tenant_id not in self._tenant_cache:
            async with self.session_factory() as session:
                row = await repository.load_tenant(session, tenant_id)
            if row is None:
                return self.tenant.credentials
            self._tenant_cache[tenant_id] = repository.tenant_context(row).credentials
        return self._tenant_cache[tenant_id]

    async def _send_with_retry(self, call, **context) -> RetryOutcome:
        return await call_with_retry(call, self.policy, sleep=self._sleep, log_context=context)

    # ── CAMPAIGN_SEND ─────────────────────────────────────────

    async def send_campaign_item(self, job: CampaignSendJob) -> DispatchResult:
        result = DispatchResult(job_type=JobType.CAMPAIGN_SEND.value, target_id=job.campaign_item_id)

        async with UnitOfWork(self.session_factory) as uow:
            item = await campaigns.claim_item(uow.session, job.campaign_item_id)
            if item is None:
                result.status = "skipped"
                return result
            contact_id = item.contact_id

        credentials = await self._credentials_for(job.tenant_id)

        async def _send() -> str:
            return await self.sender.send_template(
                ChannelType.WHATSAPP,
                job.phone,
                job.template_name,
                job.template_language,
                credentials,
                job.components or None,
            )

        outcome = await self._send_with_retry(
            _send, campaign_id=job.campaign_id, item_id=job.campaign_item_id,
        )

        try:
            item, message_id = await self._persist_outcome(job, contact_id, outcome)
        except SQLAlchemyError as e:
            if not outcome.succeeded:
                raise
            # the provider accepted the send; the item must still leave QUEUED
            logger.error("campaign_outbound_record_failed",
                         campaign_id=job.campaign_id, item_id=job.campaign_item_id,
                         external_id=outcome.result, error=str(e)[:300])
            item, message_id = await self._persist_outcome(job, contact_id, outcome, record_message=False)

        result.status = item.status if item is not None else ""
        result.retries = outcome.retries
        result.error = outcome.error_message
        result.message_id = message_id

        log = logger.info if outcome.succeeded else logger.warning
        log("campaign_item_dispatched",
            campaign_id=job.campaign_id,
            item_id=job.campaign_item_id,
            status=result.status,
            retries=outcome.retries,
            error=outcome.error_message)
        return result

    async def _persist_outcome(
        self,
        job: CampaignSendJob,
        contact_id: Optional[str],
        outcome: RetryOutcome,
        record_message: bool = True,
    ) -> tuple[Optional[CampaignItemRow], Optional[str]]:
        async with UnitOfWork(self.session_factory) as uow:
            message_id = None
            if outcome.succeeded and record_message:
                message_id = await self._record_outbound(uow, job, contact_id, outcome.result)
            item = await campaigns.record_item_outcome(
                uow.session,
                job.campaign_item_id,
                success=outcome.succeeded,
                retries=outcome.retries,
                message_id=message_id,
                error=outcome.error_message,
            )
            await campaigns.refresh_campaign(uow.session, job.campaign_id)
        return item, message_id

    async def _record_outbound(
        self, uow: UnitOfWork, job: CampaignSendJob, contact_id: Optional[str], external_id: str
    ) -> str:
        session = uow.session
        if not contact_id:
            contact_id = await resolve(
                session,
                job.tenant_id,
                ContactIdentifiers(wa_id=normalize_phone(job.phone)),
                ProfileHints(name=job.contact_name),
            )
        # a campaign send must not open the customer session window
        conversation = await resolve_conversation(
            session, job.tenant_id, contact_id, ChannelType.WHATSAPP, touch_window=False,
        )
        payload: dict[str, Any] = {
            "campaign_id": job.campaign_id,
            "campaign_item_id": job.campaign_item_id,
            "template": job.template_name,
            "language": job.template_language,
        }
        if job.variant_letter:
            payload["variant"] = job.variant_letter
        row = await self.message_store.append(
            uow,
            tenant_id=job.tenant_id,
            conversation_id=conversation.id,
            direction=MessageDirection.OUTBOUND,
            message_type=MessageType.TEMPLATE,
            body=job.template_name,
            external_id=external_id or None,
            status=MessageStatus.SENT,
            payload=payload,
        )
        return row.id

    # ── SEND_EVENT_BADGE ──────────────────────────────────────

    async def send_event_badge(self, job: EventBadgeJob) -> DispatchResult:
        credentials = await self._credentials_for(job.tenant_id)
        text = badge_text(job)

        async def _send() -> str:
            if job.badge_url:
                return await self.sender.send_media(
                    ChannelType.WHATSAPP, job.attendee_phone, "image",
                    MediaDescriptor(media_ref=job.badge_url, caption=text, mime_type="image/png"),
                    credentials,
                )
            return await self.sender.send_text(
                ChannelType.WHATSAPP, job.attendee_phone, text, credentials,
            )

        outcome = await self._send_with_retry(_send, ticket_id=job.ticket_id, event_id=job.event_id)

        async with UnitOfWork(self.session_factory) as uow:
            ticket = await campaigns.record_badge_outcome(
                uow.session, job.ticket_id, outcome.succeeded, outcome.error_message,
            )

        logger.info("event_badge_dispatched",
                    ticket_id=job.ticket_id, event_id=job.event_id,
                    sent=outcome.succeeded, retries=outcome.retries,
                    error=outcome.error_message)
        return DispatchResult(
            job_type=JobType.SEND_EVENT_BADGE.value,
            target_id=job.ticket_id,
            status=ticket.badge_status if ticket is not None else "",
            retries=outcome.retries,
            error=outcome.error_message,
        )

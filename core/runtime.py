"""
Worker runtime — wires settings, database, queues, channels and the reply
engine together and runs both consumer loops in one process.

The default tenant is resolved once here and handed to both loops; a
missing tenant is the only fatal startup condition.
"""
from __future__ import annotations

import asyncio
import signal
import structlog
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channels.normalizer import EventNormalizer
from channels.sender import ChannelSender, create_channel_sender
from config.settings import Settings, get_settings
from core.ai_providers import AIProviderRegistry, create_provider_registry
from core.reply_engine import ReplyEngine
from database import repository
from database.message_store import MessageStore
from database.session import close_db, get_session_factory
from job_queue.campaign_consumer import CampaignConsumer
from job_queue.inbound_consumer import InboundConsumer
from job_queue.publisher import RealtimePublisher, create_publisher
from job_queue.queues import WorkQueue, create_work_queue
from job_queue.retry import RetryPolicy
from models.errors import StartupError
from models.schemas import ChannelCredentials, TenantContext

logger = structlog.get_logger()


def default_credentials(settings: Settings) -> ChannelCredentials:
    return ChannelCredentials(
        access_token=settings.meta.access_token,
        phone_number_id=settings.meta.phone_number_id,
        page_access_token=settings.meta.page_access_token,
        instagram_access_token=settings.meta.instagram_access_token,
    )


async def resolve_default_tenant(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: str = "",
    fallback: Optional[ChannelCredentials] = None,
) -> TenantContext:
    async with session_factory() as session:
        row = await repository.load_tenant(session, tenant_id)
    if row is None:
        raise StartupError(
            f"tenant {tenant_id} not found" if tenant_id else "no tenant configured"
        )
    tenant = repository.tenant_context(row)
    if fallback is not None:
        tenant.credentials = tenant.credentials.merged_over(fallback)
    logger.info("default_tenant_resolved", tenant_id=tenant.tenant_id, name=tenant.name)
    return tenant


class Worker:
    """
    Usage:
        worker = Worker()
        await worker.start()     # raises StartupError without a tenant
        ...
        await worker.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        queue: Optional[WorkQueue] = None,
        publisher: Optional[RealtimePublisher] = None,
        sender: Optional[ChannelSender] = None,
        providers: Optional[AIProviderRegistry] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self.session_factory = session_factory or get_session_factory()
        self.queue = queue or create_work_queue(s.redis.backend, s.redis.url)
        self.publisher = publisher or create_publisher(s.redis.backend, s.redis.url)
        self.sender = sender or create_channel_sender(
            graph_url=s.meta.graph_url,
            api_version=s.meta.api_version,
            timeout=s.dispatch.provider_timeout,
            default_credentials=default_credentials(s),
        )
        self.providers = providers or create_provider_registry(
            max_tokens=s.ai.max_output_tokens,
            timeout=s.dispatch.provider_timeout,
            gemini_url=s.ai.gemini_url,
        )
        self.tenant: Optional[TenantContext] = None
        self.inbound: Optional[InboundConsumer] = None
        self.campaigns: Optional[CampaignConsumer] = None

    async def start(self) -> None:
        s = self.settings
        await self.queue.connect()
        await self.publisher.connect()

        self.tenant = await resolve_default_tenant(
            self.session_factory, s.tenant.default_tenant_id, default_credentials(s),
        )

        store = MessageStore(self.publisher, s.queues.realtime_channel)
        self.inbound = InboundConsumer(
            queue=self.queue,
            session_factory=self.session_factory,
            normalizer=EventNormalizer(self.sender.registry),
            message_store=store,
            reply_engine=ReplyEngine(
                self.providers,
                history_limit=s.ai.history_limit,
                knowledge_char_limit=s.ai.knowledge_char_limit,
            ),
            sender=self.sender,
            tenant=self.tenant,
            queue_name=s.queues.inbound,
            pop_timeout=s.queues.pop_timeout,
            error_backoff=s.queues.error_backoff,
            session_template=s.meta.session_template,
            session_template_language=s.meta.session_template_language,
        )
        self.campaigns = CampaignConsumer(
            queue=self.queue,
            session_factory=self.session_factory,
            sender=self.sender,
            message_store=store,
            tenant=self.tenant,
            policy=RetryPolicy(s.dispatch.max_attempts, s.dispatch.backoff_base),
            queue_name=s.queues.marketing,
            pop_timeout=s.queues.pop_timeout,
            inter_message_delay=s.dispatch.inter_message_delay,
            error_backoff=s.queues.error_backoff,
        )
        await self.inbound.start_background()
        await self.campaigns.start_background()
        logger.info("worker_started", tenant_id=self.tenant.tenant_id)

    async def stop(self) -> None:
        for consumer in (self.inbound, self.campaigns):
            if consumer is not None:
                await consumer.stop()
        await self.sender.close()
        await self.queue.close()
        await self.publisher.close()
        logger.info("worker_stopped")

    async def health(self) -> dict[str, Any]:
        s = self.settings
        depths: dict[str, Any] = {}
        for name in (s.queues.inbound, s.queues.marketing):
            try:
                depths[name] = await self.queue.length(name)
            except Exception as e:
                depths[name] = f"error: {e}"
        return {
            "tenant_id": self.tenant.tenant_id if self.tenant else None,
            "inbound": {
                "running": bool(self.inbound and self.inbound.running),
                "processed": self.inbound.processed if self.inbound else 0,
            },
            "campaigns": {
                "running": bool(self.campaigns and self.campaigns.running),
                "processed": self.campaigns.processed if self.campaigns else 0,
            },
            "queues": depths,
        }


async def run_forever(settings: Optional[Settings] = None) -> None:
    """Standalone entry point: run until SIGINT/SIGTERM."""
    worker = Worker(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # windows

    await worker.start()
    try:
        await stop.wait()
    finally:
        await worker.stop()
        await close_db()


def main() -> None:
    from dotenv import load_dotenv
    load_dotenv()

    from config.logging import configure_logging
    from config.settings import load_settings

    settings = load_settings()
    configure_logging(settings.logging.level, settings.logging.json)
    try:
        asyncio.run(run_forever(settings))
    except StartupError as e:
        logger.critical("worker_startup_failed", error=str(e))
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()

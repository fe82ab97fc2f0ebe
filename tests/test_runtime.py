"""Tests for worker bootstrap and lifecycle."""
import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import select

from config.settings import Settings
from conftest import TENANT_ID, envelope, whatsapp_payload, whatsapp_text
from core.runtime import Worker, default_credentials, resolve_default_tenant
from database.models import MessageRow, TenantRow
from models.errors import StartupError
from models.schemas import ChannelCredentials


@pytest.fixture
def settings():
    s = Settings()
    s.queues.pop_timeout = 0.05
    s.queues.error_backoff = 0.01
    s.meta.access_token = "env-token"
    s.meta.instagram_access_token = "env-ig-token"
    return s


@pytest_asyncio.fixture
async def worker(settings, session_factory, queue, publisher, fake_sender, providers):
    w = Worker(settings, session_factory=session_factory, queue=queue,
               publisher=publisher, sender=fake_sender, providers=providers)
    yield w
    if w.inbound is not None and w.inbound.running:
        await w.stop()


class TestResolveDefaultTenant:
    @pytest.mark.asyncio
    async def test_no_tenant_is_fatal(self, session_factory):
        with pytest.raises(StartupError):
            await resolve_default_tenant(session_factory)

    @pytest.mark.asyncio
    async def test_unknown_configured_tenant_is_fatal(self, session_factory, tenant_row):
        with pytest.raises(StartupError):
            await resolve_default_tenant(session_factory, "tenant-missing")

    @pytest.mark.asyncio
    async def test_oldest_tenant_by_default(self, session_factory, tenant_row):
        async with session_factory() as session:
            session.add(TenantRow(id="tenant-newer", name="Newer", facebook_config={}))
            await session.commit()

        tenant = await resolve_default_tenant(session_factory)
        assert tenant.tenant_id == TENANT_ID

    @pytest.mark.asyncio
    async def test_tenant_credentials_win_over_process_config(self, session_factory, tenant_row, settings):
        tenant = await resolve_default_tenant(session_factory, TENANT_ID, default_credentials(settings))

        assert tenant.credentials == ChannelCredentials(
            access_token="wa-token",
            phone_number_id="PNID-1",
            page_access_token="page-token",
            instagram_access_token="env-ig-token",
        )


class TestWorker:
    @pytest.mark.asyncio
    async def test_start_without_tenant_fails(self, worker):
        with pytest.raises(StartupError):
            await worker.start()
        assert worker.inbound is None

    @pytest.mark.asyncio
    async def test_lifecycle_and_health(self, worker, tenant_row, fake_sender):
        await worker.start()

        report = await worker.health()
        assert report["tenant_id"] == TENANT_ID
        assert report["inbound"]["running"] is True
        assert report["campaigns"]["running"] is True
        assert report["queues"] == {"inbound_events": 0, "marketing_queue": 0}

        await worker.stop()

        report = await worker.health()
        assert report["inbound"]["running"] is False
        assert report["campaigns"]["running"] is False
        fake_sender.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_processes_inbound_event(self, worker, tenant_row, queue, session_factory):
        await worker.start()
        await queue.push("inbound_events", envelope(whatsapp_payload(whatsapp_text("Salut"))))

        async def _processed():
            while worker.inbound.processed < 1:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_processed(), timeout=5)
        await worker.stop()

        async with session_factory() as session:
            rows = (await session.execute(select(MessageRow))).scalars().all()
        assert [r.body for r in rows] == ["Salut"]

"""Shared test fixtures for the message hub worker."""
import json
from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from channels.base import ChannelRegistry
from channels.meta_adapter import InstagramAdapter, MessengerAdapter
from channels.normalizer import EventNormalizer
from channels.whatsapp_adapter import WhatsAppAdapter
from core.ai_providers import AIProvider, AIProviderRegistry
from database import repository
from database.message_store import MessageStore
from database.models import TenantRow
from database.session import create_engine_for, init_db, make_session_factory
from job_queue.publisher import InMemoryPublisher
from job_queue.queues import InMemoryWorkQueue
from models.schemas import AIProviderName

TENANT_ID = "tenant-acme"
PHONE_NUMBER_ID = "PNID-1"


# ──────────────────────────────────────────────────────────────
#  Database
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_engine_for("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def tenant_row(session_factory) -> TenantRow:
    row = TenantRow(
        id=TENANT_ID,
        name="Acme",
        phone_number_id=PHONE_NUMBER_ID,
        whatsapp_access_token="wa-token",
        facebook_config={"page_access_token": "page-token"},
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    async with session_factory() as session:
        session.add(row)
        await session.commit()
    return row


@pytest.fixture
def tenant(tenant_row):
    return repository.tenant_context(tenant_row)


# ──────────────────────────────────────────────────────────────
#  Queues, publisher, channels
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def queue():
    return InMemoryWorkQueue()


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def message_store(publisher):
    return MessageStore(publisher, "chat_events")


@pytest.fixture
def registry():
    registry = ChannelRegistry()
    for adapter_cls in (WhatsAppAdapter, InstagramAdapter, MessengerAdapter):
        registry.register(adapter_cls())
    return registry


@pytest.fixture
def normalizer(registry):
    return EventNormalizer(registry)


@pytest.fixture
def fake_sender(registry):
    sender = MagicMock()
    sender.registry = registry
    sender.send = AsyncMock(return_value="wamid.reply")
    sender.send_text = AsyncMock(return_value="wamid.text")
    sender.send_template = AsyncMock(return_value="wamid.template")
    sender.send_media = AsyncMock(return_value="wamid.media")
    sender.close = AsyncMock()
    return sender


# ──────────────────────────────────────────────────────────────
#  AI providers
# ──────────────────────────────────────────────────────────────

class StubProvider(AIProvider):
    """Records calls; returns a canned reply or raises."""

    def __init__(self, name: AIProviderName, reply: str = "Réponse IA", error: Optional[Exception] = None):
        super().__init__()
        self.name = name
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def generate(self, history, system_prompt, api_key, model=None, temperature=0.7) -> str:
        self.calls.append({
            "history": list(history),
            "system_prompt": system_prompt,
            "api_key": api_key,
            "model": model,
            "temperature": temperature,
        })
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def gemini_stub():
    return StubProvider(AIProviderName.GEMINI)


@pytest.fixture
def openai_stub():
    return StubProvider(AIProviderName.OPENAI, reply="OpenAI reply")


@pytest.fixture
def providers(gemini_stub, openai_stub):
    return AIProviderRegistry([gemini_stub, openai_stub])


# ──────────────────────────────────────────────────────────────
#  Webhook payload builders
# ──────────────────────────────────────────────────────────────

def whatsapp_payload(
    message: Optional[dict[str, Any]] = None,
    phone_number_id: str = PHONE_NUMBER_ID,
    profile_name: str = "Marie",
    field: str = "messages",
    value: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    if value is None:
        value = {
            "messaging_product": "whatsapp",
            "metadata": {"display_phone_number": "33100000000", "phone_number_id": phone_number_id},
            "contacts": [{"profile": {"name": profile_name}, "wa_id": "33612345678"}],
            "messages": [message] if message else [],
        }
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA-1", "changes": [{"field": field, "value": value}]}],
    }


def whatsapp_text(body: str, wamid: str = "wamid.in.1", sender: str = "+33 6 12 34 56 78") -> dict[str, Any]:
    return {
        "from": sender,
        "id": wamid,
        "timestamp": "1717000000",
        "type": "text",
        "text": {"body": body},
    }


def envelope(payload: dict[str, Any], channel: str = "WHATSAPP", event_id: str = "evt-1") -> str:
    return json.dumps({
        "id": event_id,
        "channel": channel,
        "receivedAt": "2024-06-01T10:00:00Z",
        "payload": payload,
    })


def messenger_payload(messaging_event: dict[str, Any], page_id: str = "PAGE-1") -> dict[str, Any]:
    return {"object": "page", "entry": [{"id": page_id, "time": 1717000000000, "messaging": [messaging_event]}]}

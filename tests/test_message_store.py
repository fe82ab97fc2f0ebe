"""
Tests for message persistence, the unit of work and real-time fan-out.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from conftest import TENANT_ID
from database.message_store import MessageStore, recent_text_history, serialize_body
from database.models import MessageRow
from database.resolver import ContactIdentifiers, resolve, resolve_conversation
from database.unit_of_work import UnitOfWork
from models.schemas import (
    CanonicalMessage, ChannelType, MediaDescriptor, MessageDirection, MessageType,
)


async def open_conversation(session_factory) -> str:
    async with UnitOfWork(session_factory) as uow:
        contact_id = await resolve(uow.session, TENANT_ID, ContactIdentifiers(wa_id="336"))
        conversation = await resolve_conversation(uow.session, TENANT_ID, contact_id, ChannelType.WHATSAPP)
    return conversation.id


async def all_messages(session_factory) -> list[MessageRow]:
    async with session_factory() as session:
        return list((await session.execute(select(MessageRow))).scalars().all())


class TestSerializeBody:
    def test_text_is_kept(self):
        assert serialize_body(MessageType.TEXT, "Bonjour") == "Bonjour"

    def test_media_becomes_json_descriptor(self):
        media = MediaDescriptor(media_ref="MEDIA-1", caption="facture", mime_type="image/jpeg")
        body = json.loads(serialize_body(MessageType.IMAGE, "facture", media))
        assert body == {"media_ref": "MEDIA-1", "caption": "facture", "mime_type": "image/jpeg"}

    def test_placeholder_without_content(self):
        assert serialize_body(MessageType.STICKER) == "[sticker message]"


# ══════════════════════════════════════════════════════════════
#  UNIT OF WORK
# ══════════════════════════════════════════════════════════════

class TestUnitOfWork:
    @pytest.mark.asyncio
    async def test_hooks_run_after_commit_in_order(self, session_factory, tenant_row):
        seen = []

        async def first():
            seen.append("first")

        async def second():
            seen.append("second")

        async with UnitOfWork(session_factory) as uow:
            uow.after_commit(first)
            uow.after_commit(second)
            assert seen == []
        assert seen == ["first", "second"]

    @pytest.mark.asyncio
    async def test_hooks_discarded_on_rollback(self, session_factory, tenant_row):
        hook = AsyncMock()
        with pytest.raises(RuntimeError):
            async with UnitOfWork(session_factory) as uow:
                uow.after_commit(hook)
                raise RuntimeError("boom")
        hook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_raise(self, session_factory, tenant_row):
        later = AsyncMock()
        async with UnitOfWork(session_factory) as uow:
            uow.after_commit(AsyncMock(side_effect=ConnectionError("redis down")), name="publish")
            uow.after_commit(later)
        later.assert_awaited_once()

    def test_session_outside_context(self, session_factory):
        with pytest.raises(RuntimeError):
            UnitOfWork(session_factory).session


# ══════════════════════════════════════════════════════════════
#  MESSAGE STORE
# ══════════════════════════════════════════════════════════════

class TestMessageStore:
    @pytest.mark.asyncio
    async def test_append_inbound_publishes_after_commit(self, session_factory, tenant_row, message_store, publisher):
        conversation_id = await open_conversation(session_factory)
        message = CanonicalMessage(
            channel=ChannelType.WHATSAPP, external_id="wamid.1",
            sender_identifier="336", text_body="Bonjour",
            raw_payload={"entry": []},
        )

        async with UnitOfWork(session_factory) as uow:
            row = await message_store.append_inbound(uow, TENANT_ID, conversation_id, message)
            assert publisher.published == []

        assert len(publisher.published) == 1
        channel, event = publisher.published[0]
        assert channel == "chat_events"
        assert event["id"] == row.id
        assert event["tenant_id"] == TENANT_ID
        assert event["conversation_id"] == conversation_id
        assert event["direction"] == "inbound"
        assert event["body"] == "Bonjour"
        assert event["status"] == "delivered"
        assert event["created_at"]

        stored = await all_messages(session_factory)
        assert [m.external_id for m in stored] == ["wamid.1"]
        assert stored[0].payload == {"entry": []}

    @pytest.mark.asyncio
    async def test_nothing_published_when_transaction_fails(self, session_factory, tenant_row, message_store, publisher):
        conversation_id = await open_conversation(session_factory)
        with pytest.raises(RuntimeError):
            async with UnitOfWork(session_factory) as uow:
                await message_store.append(uow, TENANT_ID, conversation_id,
                                           MessageDirection.OUTBOUND, MessageType.TEXT, "hello")
                raise RuntimeError("later step failed")

        assert publisher.published == []
        assert await all_messages(session_factory) == []

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_the_row(self, session_factory, tenant_row):
        failing = AsyncMock()
        failing.publish.side_effect = ConnectionError("redis down")
        store = MessageStore(failing)
        conversation_id = await open_conversation(session_factory)

        async with UnitOfWork(session_factory) as uow:
            await store.append(uow, TENANT_ID, conversation_id,
                               MessageDirection.OUTBOUND, MessageType.TEXT, "hello")

        failing.publish.assert_awaited_once()
        assert len(await all_messages(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_same_external_id_twice_in_conversation(self, session_factory, tenant_row, message_store):
        conversation_id = await open_conversation(session_factory)
        with pytest.raises(IntegrityError):
            async with UnitOfWork(session_factory) as uow:
                for _ in range(2):
                    await message_store.append(uow, TENANT_ID, conversation_id,
                                               MessageDirection.INBOUND, MessageType.TEXT,
                                               "hi", external_id="wamid.dup")


# ══════════════════════════════════════════════════════════════
#  HISTORY
# ══════════════════════════════════════════════════════════════

class TestRecentTextHistory:
    @pytest.mark.asyncio
    async def test_oldest_first_text_only_with_roles(self, session_factory, tenant_row):
        conversation_id = await open_conversation(session_factory)
        base = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
        rows = [
            ("inbound", "text", "Bonjour"),
            ("outbound", "text", "Bienvenue !"),
            ("inbound", "image", '{"media_ref": "M"}'),
            ("outbound", "template", "promo_ete"),
            ("inbound", "text", "Vous êtes ouverts dimanche ?"),
        ]
        async with session_factory() as session:
            for i, (direction, kind, body) in enumerate(rows):
                session.add(MessageRow(tenant_id=TENANT_ID, conversation_id=conversation_id,
                                       direction=direction, type=kind, body=body,
                                       created_at=base + timedelta(minutes=i)))
            await session.commit()

            history = await recent_text_history(session, conversation_id, limit=10)
            assert [(h.role, h.content) for h in history] == [
                ("user", "Bonjour"),
                ("assistant", "Bienvenue !"),
                ("user", "Vous êtes ouverts dimanche ?"),
            ]

            latest = await recent_text_history(session, conversation_id, limit=2)
            assert [h.content for h in latest] == ["Bienvenue !", "Vous êtes ouverts dimanche ?"]

"""
Reply Engine — keyword automation first, AI (RAG) fallback second.

Returns a Reply or None. Every failure on the AI path (no config, no key,
empty history, provider error) means "no reply", never an exception.
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.ai_providers import AIProviderRegistry
from core.prompts import build_system_prompt
from database import repository
from database.message_store import recent_text_history
from models.schemas import ChannelType, Reply, ReplySource
from rules.automation import match_rule

logger = structlog.get_logger()


class ReplyEngine:

    def __init__(
        self,
        providers: AIProviderRegistry,
        history_limit: int = 10,
        knowledge_char_limit: int = 20000,
    ):
        self.providers = providers
        self.history_limit = history_limit
        self.knowledge_char_limit = knowledge_char_limit

    async def generate_reply(
        self,
        session: AsyncSession,
        tenant_id: str,
        conversation_id: str,
        inbound_text: str,
        channel: Optional[ChannelType] = None,
    ) -> Optional[Reply]:
        reply = await self.automation_reply(session, tenant_id, inbound_text)
        if reply is not None:
            return reply
        return await self.ai_reply(session, tenant_id, conversation_id, channel)

    async def automation_reply(
        self, session: AsyncSession, tenant_id: str, inbound_text: str
    ) -> Optional[Reply]:
        if not inbound_text:
            return None
        rules = await repository.active_rules(session, tenant_id)
        rule = match_rule(rules, inbound_text)
        if rule is None:
            return None
        logger.info("automation_rule_matched", tenant_id=tenant_id, rule_id=rule.id)
        return Reply(body=rule.response_text, source=ReplySource.AUTOMATION, rule_id=rule.id)

    async def ai_reply(
        self,
        session: AsyncSession,
        tenant_id: str,
        conversation_id: str,
        channel: Optional[ChannelType] = None,
    ) -> Optional[Reply]:
        config = await repository.ai_config(session, tenant_id)
        if config is None or not config.is_active:
            return None
        if not config.api_key:
            logger.warning("ai_reply_skipped", tenant_id=tenant_id, reason="missing_api_key")
            return None

        history = await recent_text_history(session, conversation_id, self.history_limit)
        if not history:
            logger.info("ai_reply_skipped", tenant_id=tenant_id, reason="empty_history")
            return None

        docs = await repository.active_knowledge(session, tenant_id)
        system_prompt = build_system_prompt(config, docs, channel, self.knowledge_char_limit)
        provider = self.providers.get(config.provider)
        temperature = config.creativity_level if config.creativity_level is not None else 0.7

        try:
            body = await provider.generate(
                history, system_prompt, config.api_key, config.model, temperature,
            )
        except Exception as e:
            # SDK and HTTP errors differ per provider; all of them mean no reply
            logger.error("ai_generation_failed",
                         tenant_id=tenant_id, provider=provider.name.value, error=str(e)[:300])
            return None

        if not body:
            logger.warning("ai_reply_empty", tenant_id=tenant_id, provider=provider.name.value)
            return None

        logger.info("ai_reply_generated",
                    tenant_id=tenant_id, provider=provider.name.value,
                    history=len(history), knowledge_docs=len(docs))
        return Reply(body=body, source=ReplySource.AI, provider=provider.name)

"""
Read-mostly queries the worker runs against tables owned by other
subsystems: tenants, templates, automation rules, AI config, knowledge docs.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    AIConfigRow, AutomationRuleRow, KnowledgeDocRow, TemplateRow, TenantRow,
)
from models.schemas import ChannelCredentials, TemplateStatusUpdate, TenantContext

logger = structlog.get_logger()


def tenant_context(row: TenantRow) -> TenantContext:
    fb = row.facebook_config or {}
    return TenantContext(
        tenant_id=row.id,
        name=row.name or "",
        credentials=ChannelCredentials(
            access_token=row.whatsapp_access_token or "",
            phone_number_id=row.phone_number_id or "",
            page_access_token=fb.get("page_access_token", "") or "",
            instagram_access_token=fb.get("instagram_access_token", "") or "",
        ),
    )


async def load_tenant(session: AsyncSession, tenant_id: str = "") -> Optional[TenantRow]:
    """The configured tenant, or the oldest one when none is configured."""
    if tenant_id:
        return await session.get(TenantRow, tenant_id)
    result = await session.execute(
        select(TenantRow).order_by(TenantRow.created_at, TenantRow.id).limit(1)
    )
    return result.scalar_one_or_none()


async def find_tenant_by_account(session: AsyncSession, phone_number_id: str) -> Optional[TenantRow]:
    if not phone_number_id:
        return None
    result = await session.execute(
        select(TenantRow).where(TenantRow.phone_number_id == phone_number_id).limit(1)
    )
    return result.scalar_one_or_none()


async def apply_template_status(
    session: AsyncSession, tenant_id: str, update: TemplateStatusUpdate
) -> int:
    """Write a template review outcome onto matching rows; returns rows touched."""
    query = select(TemplateRow).where(
        TemplateRow.tenant_id == tenant_id,
        TemplateRow.name == update.template_name,
    )
    if update.language:
        query = query.where(TemplateRow.language == update.language)
    rows = (await session.execute(query)).scalars().all()

    for row in rows:
        row.meta_status = update.status
        row.rejection_reason = update.reason if update.status == "REJECTED" else None
        row.updated_at = datetime.now(timezone.utc)

    if rows:
        logger.info("template_status_updated",
                    tenant_id=tenant_id,
                    template=update.template_name,
                    status=update.status,
                    rows=len(rows))
    else:
        logger.warning("template_status_unknown_template",
                       tenant_id=tenant_id, template=update.template_name)
    return len(rows)


async def template_owners(session: AsyncSession, update: TemplateStatusUpdate) -> list[str]:
    """Tenants holding a template with this name (and language, when given)."""
    query = select(TemplateRow.tenant_id).where(TemplateRow.name == update.template_name)
    if update.language:
        query = query.where(TemplateRow.language == update.language)
    return list((await session.execute(query.distinct())).scalars().all())


async def active_rules(session: AsyncSession, tenant_id: str) -> list[AutomationRuleRow]:
    result = await session.execute(
        select(AutomationRuleRow).where(
            AutomationRuleRow.tenant_id == tenant_id,
            AutomationRuleRow.is_active.is_(True),
        )
    )
    return list(result.scalars().all())


async def ai_config(session: AsyncSession, tenant_id: str) -> Optional[AIConfigRow]:
    result = await session.execute(
        select(AIConfigRow).where(AIConfigRow.tenant_id == tenant_id).limit(1)
    )
    return result.scalar_one_or_none()


async def active_knowledge(session: AsyncSession, tenant_id: str) -> list[KnowledgeDocRow]:
    result = await session.execute(
        select(KnowledgeDocRow)
        .where(KnowledgeDocRow.tenant_id == tenant_id, KnowledgeDocRow.is_active.is_(True))
        .order_by(KnowledgeDocRow.created_at, KnowledgeDocRow.id)
    )
    return list(result.scalars().all())

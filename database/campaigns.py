"""
Campaign persistence — per-item status transitions and the aggregate
roll-up onto the parent campaign.

Item lifecycle:   PENDING → QUEUED → SENT | FAILED   (DELIVERED/READ out-of-band)
Campaign:         DRAFT → PROCESSING → COMPLETED | FAILED

A campaign is COMPLETED exactly when every one of its items is terminal.
Counters and stats are recomputed from item rows on every outcome, so a
redelivered job cannot double count.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import CampaignItemRow, CampaignRow, TicketRow
from models.errors import InvalidTransitionError
from models.schemas import BadgeStatus, CampaignItemStatus, CampaignStatus

logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def transition_item(item: CampaignItemRow, target: CampaignItemStatus, now: datetime = None) -> None:
    current = CampaignItemStatus(item.status)
    if not current.can_transition(target):
        raise InvalidTransitionError("campaign_item", current.value, target.value)
    now = now or _now()
    item.status = target.value
    if target == CampaignItemStatus.QUEUED:
        item.queued_at = now
    elif target == CampaignItemStatus.SENT:
        item.sent_at = now


async def get_item(session: AsyncSession, item_id: str) -> Optional[CampaignItemRow]:
    return await session.get(CampaignItemRow, item_id)


async def get_campaign(session: AsyncSession, campaign_id: str) -> Optional[CampaignRow]:
    return await session.get(CampaignRow, campaign_id)


async def claim_item(session: AsyncSession, item_id: str) -> Optional[CampaignItemRow]:
    """
    Make sure the item is QUEUED before a send. Returns None when the item
    is missing or already terminal (redelivered job).
    """
    item = await get_item(session, item_id)
    if item is None:
        logger.warning("campaign_item_not_found", item_id=item_id)
        return None
    status = CampaignItemStatus(item.status)
    if status.is_terminal:
        logger.info("campaign_item_already_terminal", item_id=item_id, status=status.value)
        return None
    if status == CampaignItemStatus.PENDING:
        transition_item(item, CampaignItemStatus.QUEUED)
        await session.flush()
    return item


async def _status_counts(session: AsyncSession, campaign_id: str) -> dict[str, int]:
    result = await session.execute(
        select(CampaignItemRow.status, func.count())
        .where(CampaignItemRow.campaign_id == campaign_id)
        .group_by(CampaignItemRow.status)
    )
    return {status: count for status, count in result.all()}


async def _variant_counts(session: AsyncSession, campaign_id: str) -> dict[str, dict[str, int]]:
    result = await session.execute(
        select(CampaignItemRow.variant_letter, CampaignItemRow.status, func.count())
        .where(
            CampaignItemRow.campaign_id == campaign_id,
            CampaignItemRow.variant_letter.is_not(None),
        )
        .group_by(CampaignItemRow.variant_letter, CampaignItemRow.status)
    )
    variants: dict[str, dict[str, int]] = {}
    for letter, status, count in result.all():
        variants.setdefault(letter, {})[status.lower()] = count
    return variants


async def refresh_campaign(session: AsyncSession, campaign_id: str, now: datetime = None) -> Optional[CampaignRow]:
    """Recompute counters and stats; flip status when appropriate."""
    campaign = await get_campaign(session, campaign_id)
    if campaign is None:
        logger.warning("campaign_not_found", campaign_id=campaign_id)
        return None
    now = now or _now()

    counts = await _status_counts(session, campaign_id)
    total = sum(counts.values())
    sent = sum(counts.get(s.value, 0) for s in (
        CampaignItemStatus.SENT, CampaignItemStatus.DELIVERED, CampaignItemStatus.READ,
    ))
    failed = counts.get(CampaignItemStatus.FAILED.value, 0)
    open_items = counts.get(CampaignItemStatus.PENDING.value, 0) + counts.get(CampaignItemStatus.QUEUED.value, 0)

    campaign.total_sent = sent
    campaign.total_failed = failed
    if not campaign.total_contacts:
        campaign.total_contacts = total

    stats: dict[str, Any] = {s.value.lower(): counts.get(s.value, 0) for s in CampaignItemStatus}
    stats["total"] = total
    variants = await _variant_counts(session, campaign_id)
    if variants:
        stats["variants"] = variants
    campaign.stats = stats

    if campaign.status == CampaignStatus.DRAFT.value:
        campaign.status = CampaignStatus.PROCESSING.value
        campaign.started_at = campaign.started_at or now

    if total > 0 and open_items == 0 and campaign.status == CampaignStatus.PROCESSING.value:
        campaign.status = CampaignStatus.COMPLETED.value
        campaign.completed_at = now
        logger.info("campaign_completed",
                    campaign_id=campaign_id, sent=sent, failed=failed, total=total)

    await session.flush()
    return campaign


async def record_item_outcome(
    session: AsyncSession,
    item_id: str,
    success: bool,
    retries: int,
    message_id: Optional[str] = None,
    error: Optional[str] = None,
    now: datetime = None,
) -> Optional[CampaignItemRow]:
    """QUEUED → SENT (linking message_id) or QUEUED → FAILED (keeping error)."""
    item = await get_item(session, item_id)
    if item is None:
        logger.warning("campaign_item_not_found", item_id=item_id)
        return None
    now = now or _now()
    if success:
        transition_item(item, CampaignItemStatus.SENT, now)
        item.message_id = message_id
        item.error_message = None
    else:
        transition_item(item, CampaignItemStatus.FAILED, now)
        item.error_message = error
    item.retry_count = retries
    await session.flush()
    return item


async def record_badge_outcome(
    session: AsyncSession, ticket_id: str, success: bool, error: Optional[str] = None
) -> Optional[TicketRow]:
    ticket = await session.get(TicketRow, ticket_id)
    if ticket is None:
        logger.warning("ticket_not_found", ticket_id=ticket_id)
        return None
    if success:
        ticket.badge_status = BadgeStatus.SENT.value
        ticket.badge_sent_at = _now()
        ticket.badge_error = None
    else:
        ticket.badge_status = BadgeStatus.FAILED.value
        ticket.badge_error = error
    await session.flush()
    return ticket

"""
Keyword automation — tenant-scoped keyword → canned reply.

A rule matches when its keyword appears anywhere in the inbound text,
case-insensitively. When several rules match, the winner is picked by:
  1. highest priority
  2. longest keyword (the more specific phrase)
  3. oldest rule
  4. rule id
so the outcome never depends on row order.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional, Sequence

from database.models import AutomationRuleRow, as_utc

logger = structlog.get_logger()

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _matches(rule: AutomationRuleRow, lowered_text: str) -> bool:
    keyword = (rule.trigger_keyword or "").strip().casefold()
    return bool(keyword) and keyword in lowered_text


def _rank(rule: AutomationRuleRow):
    return (
        -(rule.priority or 0),
        -len((rule.trigger_keyword or "").strip()),
        as_utc(rule.created_at) or _EPOCH,
        rule.id or "",
    )


def match_rule(rules: Sequence[AutomationRuleRow], text: str) -> Optional[AutomationRuleRow]:
    """Return the winning active rule for this text, or None."""
    if not text:
        return None
    lowered = text.casefold()
    candidates = [r for r in rules if r.is_active and _matches(r, lowered)]
    if not candidates:
        return None
    winner = min(candidates, key=_rank)
    if len(candidates) > 1:
        logger.info("automation_rule_tie_broken",
                    rule_id=winner.id, candidates=len(candidates))
    return winner

"""
Database layer — async SQLAlchemy over PostgreSQL (SQLite for tests).

Quick start:
  from database import UnitOfWork, get_session_factory
  async with UnitOfWork(get_session_factory()) as uow:
      contact_id = await resolve(uow.session, tenant_id, identifiers)
"""
from database.models import (
    Base, TenantRow, ContactRow, ConversationRow, MessageRow, TemplateRow,
    AutomationRuleRow, AIConfigRow, KnowledgeDocRow,
    CampaignRow, CampaignItemRow, TicketRow,
)
from database.session import (
    get_engine, get_session_factory, make_session_factory,
    create_engine_for, init_db, close_db,
)
from database.unit_of_work import UnitOfWork

__all__ = [
    # ORM models
    "Base", "TenantRow", "ContactRow", "ConversationRow", "MessageRow", "TemplateRow",
    "AutomationRuleRow", "AIConfigRow", "KnowledgeDocRow",
    "CampaignRow", "CampaignItemRow", "TicketRow",
    # Session management
    "get_engine", "get_session_factory", "make_session_factory",
    "create_engine_for", "init_db", "close_db",
    "UnitOfWork",
]

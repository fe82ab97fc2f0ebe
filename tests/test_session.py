"""Tests for engine construction and SQLite savepoint support."""
import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from conftest import TENANT_ID
from database.models import ContactRow
from database.session import _engine_kwargs, _to_async_url


class TestAsyncUrl:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@db/hub", "postgresql+asyncpg://u:p@db/hub"),
        ("postgres://u:p@db/hub", "postgresql+asyncpg://u:p@db/hub"),
        ("sqlite:///./hub.db", "sqlite+aiosqlite:///./hub.db"),
        ("postgresql+asyncpg://db/hub", "postgresql+asyncpg://db/hub"),
    ])
    def test_translation(self, url, expected):
        assert _to_async_url(url) == expected


class TestEngineKwargs:
    def test_postgres_is_pooled(self):
        kwargs = _engine_kwargs("postgresql+asyncpg://db/hub")
        assert kwargs["pool_pre_ping"] is True
        assert "connect_args" not in kwargs

    def test_sqlite_memory_uses_one_connection(self):
        kwargs = _engine_kwargs("sqlite+aiosqlite:///:memory:", echo=True)
        assert kwargs["poolclass"] is StaticPool
        assert kwargs["echo"] is True

    def test_sqlite_file(self):
        assert "poolclass" not in _engine_kwargs("sqlite+aiosqlite:///./hub.db")


class TestSavepoints:
    @pytest.mark.asyncio
    async def test_nested_rollback_keeps_outer_work(self, session_factory, tenant_row):
        async with session_factory() as session:
            async with session.begin():
                session.add(ContactRow(tenant_id=TENANT_ID, wa_id="336", name="Outer"))
                await session.flush()
                with pytest.raises(IntegrityError):
                    async with session.begin_nested():
                        session.add(ContactRow(tenant_id=TENANT_ID, wa_id="336", name="Clash"))
                        await session.flush()

        async with session_factory() as session:
            names = (await session.execute(select(ContactRow.name))).scalars().all()
        assert names == ["Outer"]

"""
Testes para xlog/database.py

Cobre:
- build_engine / build_session_factory produzem objetos assíncronos
- init_db cria todas as tabelas do núcleo de federação
- dialect_insert: ON CONFLICT DO NOTHING reporta rowcount 0 no conflito
- as_utc: datetimes sem tzinfo (SQLite) são tratados como UTC
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from xlog.database import as_utc, dialect_insert, new_uuid, utcnow
from xlog.models.follower import Follower


def test_engine_is_async_engine(engine):
    assert isinstance(engine, AsyncEngine)


def test_session_factory_is_sessionmaker(session_factory):
    assert isinstance(session_factory, async_sessionmaker)


@pytest.mark.asyncio
async def test_session_factory_produces_async_session(session_factory):
    async with session_factory() as session:
        assert isinstance(session, AsyncSession)


@pytest.mark.asyncio
async def test_init_db_creates_tables(engine):
    async with engine.connect() as conn:
        tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    for table in (
        "users",
        "user_keys",
        "posts",
        "instance_settings",
        "followers",
        "following",
        "deliveries",
        "delivery_jobs",
        "inbox_objects",
        "replay_cache",
    ):
        assert table in tables


@pytest.mark.asyncio
async def test_dialect_insert_on_conflict_do_nothing(session_factory, alice):
    async def insert_follower():
        async with session_factory() as session:
            async with session.begin():
                stmt = dialect_insert(session, Follower).values(
                    id=new_uuid(),
                    local_user_id=alice.user_id,
                    remote_actor="https://remote.test/users/bob",
                    inbox_url="https://remote.test/users/bob/inbox",
                    approved=True,
                    created_at=utcnow(),
                )
                result = await session.execute(
                    stmt.on_conflict_do_nothing(index_elements=["local_user_id", "remote_actor"])
                )
        return result.rowcount

    assert await insert_follower() == 1
    assert await insert_follower() == 0

    async with session_factory() as session:
        rows = (await session.execute(select(Follower))).scalars().all()
    assert len(rows) == 1


def test_as_utc_attaches_timezone_to_naive():
    value = as_utc(datetime(2026, 1, 1, 12, 0))

    assert value.tzinfo == timezone.utc


def test_utcnow_is_aware():
    assert utcnow().tzinfo is not None

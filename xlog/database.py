"""
xlog/database.py

Configuração do banco de dados via SQLAlchemy assíncrono.

Não existe engine global: a raiz de composição (xlog/main.py ou o worker
standalone) cria a engine e a fábrica de sessões e as injeta nos
componentes que precisam de persistência.

Exporta:
- `Base`                    — classe base para os modelos ORM
- `build_engine()`          — cria uma engine assíncrona para a URL informada
- `build_session_factory()` — fábrica de sessões ligada a uma engine
- `init_db()`               — cria as tabelas na inicialização
- `get_session()`           — dependência FastAPI que fornece sessão por request
- `dialect_insert()`        — `insert` com suporte a ON CONFLICT do dialeto ativo
- `utcnow()` / `as_utc()`   — datas sempre em UTC
- `new_uuid()`              — chave primária textual
"""

import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

# ---------------------------------------------------------------------------
# Base declarativa
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Engine e fábrica de sessões
# ---------------------------------------------------------------------------


def build_engine(database_url: str) -> AsyncEngine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_async_engine(database_url, echo=False, connect_args=connect_args)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,  # evita lazy-load após commit em contexto assíncrono
        class_=AsyncSession,
    )


# ---------------------------------------------------------------------------
# Inicialização
# ---------------------------------------------------------------------------


async def init_db(engine: AsyncEngine) -> None:
    """
    Cria todas as tabelas definidas nos modelos ORM caso ainda não existam.
    Idempotente: pode ser chamado a cada startup.
    """
    # Importa os modelos para que o SQLAlchemy os registre no metadata da Base
    # antes de criar as tabelas. Sem este import, as tabelas não serão criadas.
    from xlog.models import delivery, follower, inbox, local, replay  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# Dependência FastAPI
# ---------------------------------------------------------------------------


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependência FastAPI que fornece uma sessão de banco por request,
    usando a fábrica registrada em `app.state` no lifespan.
    Faz commit automático em caso de sucesso e rollback em caso de exceção.
    """
    session_factory = request.app.state.federation.session_factory
    async with session_factory() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def dialect_insert(session: AsyncSession, model):
    """
    Retorna um `insert()` do dialeto em uso, que expõe
    `on_conflict_do_nothing` / `on_conflict_do_update`.
    SQLite e PostgreSQL compartilham a mesma sintaxe de ON CONFLICT.

    Usa a Table do modelo: o statement é Core puro e `rowcount` reflete
    as linhas de fato inseridas/atualizadas.
    """
    table = getattr(model, "__table__", model)
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite devolve datetime sem tzinfo; todos os valores gravados são UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_uuid() -> str:
    return str(uuid.uuid4())

"""
xlog/activitypub/replay.py

Proteção contra replay de requisições assinadas.

`check_and_record()` é um único statement:

    INSERT INTO replay_cache (key, created_at) VALUES (:key, :now)
    ON CONFLICT (key) DO UPDATE SET created_at = excluded.created_at
    WHERE replay_cache.created_at < :now - TTL

1 linha afetada → chave nova (ou expirada e renovada) → requisição fresca.
0 linhas        → chave vista dentro do TTL → replay.

Um SELECT seguido de INSERT abriria uma janela de corrida entre
verificadores concorrentes.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xlog.database import dialect_insert, utcnow
from xlog.models.replay import ReplayCacheEntry

log = logging.getLogger(__name__)


class ReplayGuard:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    @staticmethod
    def make_key(signature: str, date: str) -> str:
        return f"{signature}:{date}"

    async def check_and_record(self, signature: str, date: str) -> bool:
        """True se (signature, date) ainda não foi visto dentro do TTL."""
        now = self.clock()
        key = self.make_key(signature, date)

        async with self.session_factory() as session:
            async with session.begin():
                stmt = dialect_insert(session, ReplayCacheEntry).values(key=key, created_at=now)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["key"],
                    set_={"created_at": stmt.excluded.created_at},
                    where=ReplayCacheEntry.created_at < now - self.ttl,
                )
                result = await session.execute(stmt)

        fresh = result.rowcount == 1
        if not fresh:
            log.warning(f"Replay detectado para date={date!r}")
        return fresh

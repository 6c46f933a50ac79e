"""
xlog/services/instance_settings.py

Cache explícito das configurações da instância.

A linha `instance_settings` (id=1) é editada por um colaborador externo;
quando ela ainda não existe, os valores vêm do Dynaconf. O cache pertence à
raiz de composição e é injetado em quem precisa do domínio; quem altera as
configurações chama `invalidate()`.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xlog.config import settings
from xlog.models.local import InstanceSettings

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstanceConfig:
    domain: str
    name: str
    description: str | None = None
    open_registrations: bool = False
    federation_enabled: bool = True


def config_from_settings() -> InstanceConfig:
    return InstanceConfig(
        domain=settings.domain,
        name=settings.get("instance_name", "x-log"),
    )


class InstanceSettingsCache:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: float = 60,
        fallback: Callable[[], InstanceConfig] = config_from_settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.fallback = fallback
        self.clock = clock
        self._cached: InstanceConfig | None = None
        self._loaded_at = 0.0

    async def get(self) -> InstanceConfig:
        now = self.clock()
        if self._cached is not None and now - self._loaded_at < self.ttl_seconds:
            return self._cached

        async with self.session_factory() as session:
            row = (
                await session.execute(select(InstanceSettings).where(InstanceSettings.id == 1))
            ).scalar_one_or_none()

        if row is None:
            # sem linha ainda: não cacheia, a tela de setup pode criá-la a qualquer momento
            return self.fallback()

        self._cached = InstanceConfig(
            domain=row.instance_domain,
            name=row.instance_name,
            description=row.instance_description,
            open_registrations=row.open_registrations,
            federation_enabled=row.federation_enabled,
        )
        self._loaded_at = now
        return self._cached

    def invalidate(self) -> None:
        log.info("Cache de configurações da instância invalidado")
        self._cached = None
        self._loaded_at = 0.0

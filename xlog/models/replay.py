"""
xlog/models/replay.py

Cache de assinaturas já vistas. A chave é `signature:date`; entradas mais
antigas que o TTL são consideradas expiradas (ignoradas, não apagadas).
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from xlog.database import Base


class ReplayCacheEntry(Base):
    __tablename__ = "replay_cache"

    key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=lambda: datetime.now(timezone.utc),
    )

"""
xlog/models/inbox.py

Log de auditoria append-only de toda atividade recebida nas inboxes locais.
Gravado antes de qualquer efeito colateral.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from xlog.database import Base


class InboxObject(Base):
    __tablename__ = "inbox_objects"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # id da atividade remota; único quando presente, NULLs não colidem
    activity_id: Mapped[str | None] = mapped_column(String(2048), unique=True, nullable=True)
    type: Mapped[str] = mapped_column(String(100))
    actor: Mapped[str] = mapped_column(String(2048), default="")
    object_id: Mapped[str] = mapped_column(String(2048), default="")
    raw: Mapped[dict] = mapped_column(JSON)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<InboxObject type={self.type} activity_id={self.activity_id!r}>"

"""
xlog/models/delivery.py

Modelos ORM da entrega de atividades para inboxes remotas.

- `Delivery`       — estado de uma atividade enviada a uma inbox, único por
  `activity_id`. Guarda o snapshot JSON do que foi (ou será) enviado.
- `DeliveryJobRow` — fila durável consumida pelos workers. Um job reivindicado
  fica invisível até `claimed_until`; se o worker morrer no meio da entrega,
  o job volta a ser visível quando a reivindicação expira.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from xlog.database import Base

# Estados possíveis de Delivery.status
PENDING = "pending"
SENT = "sent"
FAILED = "failed"
RETRYING = "retrying"


class Delivery(Base):
    __tablename__ = "deliveries"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    activity_id: Mapped[str] = mapped_column(String(2048), unique=True)
    # Create, Accept ou Follow: define como o payload é obtido no worker
    activity_type: Mapped[str] = mapped_column(String(50), default="Create")
    remote_inbox: Mapped[str] = mapped_column(String(2048), default="")
    status: Mapped[str] = mapped_column(String(20), default=PENDING, index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    post_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    activity_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"<Delivery activity_id={self.activity_id!r} status={self.status} "
            f"attempts={self.attempt_count}>"
        )


class DeliveryJobRow(Base):
    __tablename__ = "delivery_jobs"

    # autoincremento garante a ordem FIFO do pop
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    activity_id: Mapped[str] = mapped_column(String(2048))
    user_id: Mapped[str] = mapped_column(String(36), default="")
    post_id: Mapped[str] = mapped_column(String(255), default="")
    inbox_url: Mapped[str] = mapped_column(String(2048), default="")
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=lambda: datetime.now(timezone.utc),
    )
    claimed_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    # quantas vezes o job foi entregue a um worker (>1 indica redelivery)
    deliveries: Mapped[int] = mapped_column(Integer, default=0)

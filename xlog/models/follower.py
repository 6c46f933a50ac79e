"""
xlog/models/follower.py

Modelos ORM para as relações de follow com actors remotos.

- `Follower`  — actor remoto que segue um usuário local (criado por Follow
  recebido, removido por Undo{Follow})
- `Following` — actor remoto que um usuário local passou a seguir (criado ao
  enviar Follow, `accepted` vira True quando o Accept correspondente chega)

As duas tabelas são únicas em (local_user_id, remote_actor): a idempotência
de Follow duplicado é garantida pela constraint, não pelo chamador.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from xlog.database import Base


class Follower(Base):
    __tablename__ = "followers"
    __table_args__ = (
        UniqueConstraint("local_user_id", "remote_actor", name="uq_followers_user_actor"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    local_user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))

    # URL canônica do actor remoto, identificador único no Fediverso
    # ex: "https://mastodon.social/users/fulano"
    remote_actor: Mapped[str] = mapped_column(String(2048))

    # Inbox do actor, usada em todas as entregas
    inbox_url: Mapped[str] = mapped_column(String(2048))

    approved: Mapped[bool] = mapped_column(Boolean, default=True)

    # insert_default é avaliado pelo SQLAlchemy no momento do INSERT,
    # garantindo o timezone correto independente da configuração do sistema
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Follower remote_actor={self.remote_actor!r}>"


class Following(Base):
    __tablename__ = "following"
    __table_args__ = (
        UniqueConstraint("local_user_id", "remote_actor", name="uq_following_user_actor"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    local_user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    remote_actor: Mapped[str] = mapped_column(String(2048))
    inbox_url: Mapped[str] = mapped_column(String(2048))

    # id do Follow que enviamos; o Accept remoto referencia este valor
    activity_id: Mapped[str] = mapped_column(String(2048), index=True)
    accepted: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Following remote_actor={self.remote_actor!r} accepted={self.accepted}>"

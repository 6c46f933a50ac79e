"""
xlog/models/local.py

Tabelas mantidas pelos colaboradores externos (cadastro, editor de posts,
tela de configurações da instância). O núcleo de federação só lê estes
registros, com uma exceção: `posts.like_count`, alterado por Like/Undo.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from xlog.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(255), unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<User username={self.username!r}>"


class UserKey(Base):
    """Par de chaves RSA do actor local. Gerado uma vez, nunca rotacionado."""

    __tablename__ = "user_keys"

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    public_key_pem: Mapped[str] = mapped_column(Text)
    private_key_pem: Mapped[str] = mapped_column(Text)
    # ex: "https://x.log/ap/users/alice#main-key"
    key_id: Mapped[str] = mapped_column(String(2048))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=lambda: datetime.now(timezone.utc),
    )


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    author_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String(500))
    # HTML já renderizado pelo colaborador de markdown
    content_html: Mapped[str] = mapped_column(Text, default="")
    hashtags: Mapped[list[str]] = mapped_column(JSON, default=list)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    banner_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    like_count: Mapped[int] = mapped_column(Integer, default=0)
    # None = rascunho, não federado
    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<Post id={self.id!r} likes={self.like_count}>"


class InstanceSettings(Base):
    """Linha única (id=1) editada pela tela de configurações da instância."""

    __tablename__ = "instance_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    instance_name: Mapped[str] = mapped_column(String(255), default="x-log")
    instance_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    instance_domain: Mapped[str] = mapped_column(String(255))
    open_registrations: Mapped[bool] = mapped_column(Boolean, default=False)
    federation_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

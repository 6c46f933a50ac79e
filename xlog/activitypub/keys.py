"""
xlog/activitypub/keys.py

Chaves RSA dos actors locais.

- `generate_keypair()`      — gera o par PEM na criação da conta
- `provision_local_actor()` — cria usuário + chaves (hook de criação de conta)
- `get_local_actor()`       — carrega o LocalActor por username ou user_id
"""

from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from xlog.activitypub.actor import ActorIdentity
from xlog.models.local import User, UserKey


@dataclass(frozen=True)
class LocalActor:
    user_id: str
    username: str
    display_name: str
    summary: str
    public_key_pem: str
    private_key_pem: str
    key_id: str


def generate_keypair() -> tuple[str, str]:
    """Retorna (private_pem, public_pem): RSA 2048, PKCS8 / SubjectPublicKeyInfo."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem.decode(), public_pem.decode()


def load_private_key(private_key_pem: str) -> rsa.RSAPrivateKey:
    return serialization.load_pem_private_key(private_key_pem.encode(), password=None)


def load_public_key(public_key_pem: str) -> rsa.RSAPublicKey:
    return serialization.load_pem_public_key(public_key_pem.encode())


async def provision_local_actor(
    session: AsyncSession,
    identity: ActorIdentity,
    username: str,
    display_name: str | None = None,
    bio: str | None = None,
) -> User:
    """
    Cria o usuário e o par de chaves. As chaves nunca são rotacionadas
    pelo núcleo; chamar apenas na criação da conta.
    """
    user = User(username=username, display_name=display_name, bio=bio)
    session.add(user)
    await session.flush()

    private_pem, public_pem = generate_keypair()
    session.add(
        UserKey(
            user_id=user.id,
            public_key_pem=public_pem,
            private_key_pem=private_pem,
            key_id=identity.key_id(username),
        )
    )
    await session.flush()
    return user


async def get_local_actor(
    session: AsyncSession,
    *,
    username: str | None = None,
    user_id: str | None = None,
) -> LocalActor | None:
    stmt = select(User, UserKey).join(UserKey, UserKey.user_id == User.id)
    if username is not None:
        stmt = stmt.where(User.username == username)
    elif user_id is not None:
        stmt = stmt.where(User.id == user_id)
    else:
        raise ValueError("username ou user_id é obrigatório")

    row = (await session.execute(stmt)).first()
    if row is None:
        return None

    user, key = row
    return LocalActor(
        user_id=user.id,
        username=user.username,
        display_name=user.display_name or user.username,
        summary=user.bio or "",
        public_key_pem=key.public_key_pem,
        private_key_pem=key.private_key_pem,
        key_id=key.key_id,
    )

"""
Fixtures compartilhadas entre todos os testes.
"""

from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

DOMAIN = "x.test"
REMOTE_ACTOR = "https://remote.test/users/bob"


# ---------------------------------------------------------------------------
# Chaves RSA geradas em memória — simulam a chave de um actor remoto
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_private_key():
    """Par de chaves RSA gerado uma única vez por sessão de testes."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture(scope="session")
def rsa_public_key_pem(rsa_private_key) -> str:
    return (
        rsa_private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )


# ---------------------------------------------------------------------------
# Configuração Dynaconf isolada para testes
# Usa monkeypatch para sobrescrever os atributos sem tocar em arquivos .toml
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def patch_settings(monkeypatch, tmp_path):
    """
    Sobrescreve as settings do Dynaconf com valores de teste.
    Cada teste recebe seu próprio arquivo SQLite em `tmp_path`.
    """
    from xlog import config

    monkeypatch.setattr(config.settings, "domain", DOMAIN)
    monkeypatch.setattr(config.settings, "instance_name", "x-log de teste")
    monkeypatch.setattr(
        config.settings, "database_url", f"sqlite+aiosqlite:///{tmp_path / 'xlog.db'}"
    )
    monkeypatch.setattr(config.settings, "run_workers", False)
    monkeypatch.setattr(config.settings, "admin_token", "segredo")


# ---------------------------------------------------------------------------
# Banco de dados e componentes
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    from xlog.database import build_engine, init_db

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'core.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    from xlog.database import build_session_factory

    return build_session_factory(engine)


@pytest.fixture
def settings_cache(session_factory):
    from xlog.services.instance_settings import InstanceSettingsCache

    return InstanceSettingsCache(session_factory, ttl_seconds=60)


@pytest.fixture
def identity():
    from xlog.activitypub.actor import ActorIdentity

    return ActorIdentity(DOMAIN)


@pytest.fixture
def make_user(session_factory, identity):
    """Factory que cria um usuário local com chaves e devolve o LocalActor."""
    from xlog.activitypub.keys import get_local_actor, provision_local_actor

    async def _make(username: str = "alice", display_name: str | None = "Alice"):
        async with session_factory() as session:
            async with session.begin():
                await provision_local_actor(session, identity, username, display_name)
            return await get_local_actor(session, username=username)

    return _make


@pytest_asyncio.fixture
async def alice(make_user):
    return await make_user("alice", "Alice")


@pytest.fixture
def make_post(session_factory):
    """Factory de posts. `published=False` cria um rascunho."""
    from xlog.models.local import Post

    async def _make(
        author_id: str,
        post_id: str = "p1",
        published: bool = True,
        like_count: int = 0,
        **fields,
    ):
        post = Post(
            id=post_id,
            author_id=author_id,
            title=fields.pop("title", "Olá, Fediverso"),
            content_html=fields.pop("content_html", "<p>Primeiro post</p>"),
            hashtags=fields.pop("hashtags", ["python", "fediverso"]),
            like_count=like_count,
            published_at=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc) if published else None,
            **fields,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(post)
        return post

    return _make


# ---------------------------------------------------------------------------
# HTTP remoto simulado
# ---------------------------------------------------------------------------


class RemoteServer:
    """
    Servidor remoto falso para httpx.MockTransport.
    Guarda todas as requisições recebidas e responde conforme `responses`
    (url → status ou dict JSON); o padrão é 202 vazio.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, int | dict] = {}
        self.default_status = 202
        self.error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        response = self.responses.get(str(request.url), self.default_status)
        if isinstance(response, dict):
            return httpx.Response(200, json=response)
        return httpx.Response(response)

    def posts(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]


@pytest.fixture
def remote():
    return RemoteServer()


@pytest_asyncio.fixture
async def http_client(remote):
    async with httpx.AsyncClient(transport=httpx.MockTransport(remote)) as client:
        yield client


@pytest.fixture
def federation(session_factory, http_client):
    from xlog.federation import build_federation

    return build_federation(session_factory, http_client)


@pytest.fixture
def remote_actor_url() -> str:
    return REMOTE_ACTOR


@pytest.fixture
def remote_actor_document(rsa_public_key_pem):
    return {
        "id": REMOTE_ACTOR,
        "type": "Person",
        "inbox": f"{REMOTE_ACTOR}/inbox",
        "publicKey": {
            "id": f"{REMOTE_ACTOR}#main-key",
            "owner": REMOTE_ACTOR,
            "publicKeyPem": rsa_public_key_pem,
        },
    }

"""
xlog/activitypub/signatures.py

HTTP Signatures (draft-cavage) com RSA-SHA256.

Saída, `sign()` / `signed_headers()`:
    Signature: keyId="https://<domain>/ap/users/<user>#main-key",
               algorithm="rsa-sha256",
               headers="(request-target) host date digest content-type",
               signature="<base64>"

Entrada, `SignatureVerifier.verify()`, na ordem:
1. Digest presente → recalcula SHA-256 do corpo e compara
2. Date presente   → rejeita se |agora - date| > 5 minutos
3. Faz o parse de keyId / headers / signature
4. Consulta o ReplayGuard para (signature, date)
5. Resolve a chave pública (actor local no banco ou actor remoto via HTTP)
6. Reconstrói a string assinada e verifica RSA-SHA256

Qualquer falha devolve False, nunca uma exceção para o chamador.
"""

import base64
import hashlib
import logging
import re
from datetime import datetime, timedelta
from email.utils import format_datetime, parsedate_to_datetime
from typing import Callable, Mapping
from urllib.parse import urlsplit

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xlog.activitypub.actor import ActorIdentity, actor_url_from_key_id
from xlog.activitypub.keys import get_local_actor, load_private_key, load_public_key
from xlog.activitypub.replay import ReplayGuard
from xlog.database import as_utc, utcnow
from xlog.errors import (
    ActorUnresolvable,
    ClockSkewExceeded,
    ReplayDetected,
    SignatureError,
    SignatureInvalid,
)
from xlog.services.instance_settings import InstanceSettingsCache

log = logging.getLogger(__name__)

ACTIVITY_JSON = "application/activity+json"
SIGNED_HEADERS = ("(request-target)", "host", "date", "digest", "content-type")

_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


# ---------------------------------------------------------------------------
# Blocos da string de assinatura
# ---------------------------------------------------------------------------


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode() if isinstance(body, str) else body


def compute_digest(body: bytes | str) -> str:
    digest = hashlib.sha256(_as_bytes(body)).digest()
    return "SHA-256=" + base64.b64encode(digest).decode()


def http_date(moment: datetime | None = None) -> str:
    """Data no formato RFC 1123, ex: 'Mon, 19 Oct 2026 12:00:00 GMT'."""
    return format_datetime(as_utc(moment or utcnow()), usegmt=True)


def request_target(method: str, url: str) -> str:
    parts = urlsplit(url)
    target = parts.path or "/"
    if parts.query:
        target += f"?{parts.query}"
    return f"{method.lower()} {target}"


def build_signing_string(pairs: list[tuple[str, str]]) -> str:
    return "\n".join(f"{name}: {value}" for name, value in pairs)


def parse_signature_header(header: str) -> dict[str, str]:
    return {key: value for key, value in _PARAM_RE.findall(header)}


# ---------------------------------------------------------------------------
# Assinatura de requisições de saída
# ---------------------------------------------------------------------------


def sign(
    method: str,
    url: str,
    body: bytes | str,
    private_key_pem: str,
    key_id: str,
    date: str | None = None,
) -> str:
    """
    Retorna o valor do header `Signature`. O mesmo `date` precisa ser enviado
    no header `Date`; use `signed_headers()` para obter o conjunto completo.
    """
    values = {
        "(request-target)": request_target(method, url),
        "host": urlsplit(url).netloc,
        "date": date or http_date(),
        "digest": compute_digest(body),
        "content-type": ACTIVITY_JSON,
    }
    signing_string = build_signing_string([(name, values[name]) for name in SIGNED_HEADERS])

    private_key = load_private_key(private_key_pem)
    signature = private_key.sign(signing_string.encode(), padding.PKCS1v15(), hashes.SHA256())

    return ",".join(
        [
            f'keyId="{key_id}"',
            'algorithm="rsa-sha256"',
            f'headers="{" ".join(SIGNED_HEADERS)}"',
            f'signature="{base64.b64encode(signature).decode()}"',
        ]
    )


def signed_headers(
    method: str,
    url: str,
    body: bytes | str,
    private_key_pem: str,
    key_id: str,
    moment: datetime | None = None,
) -> dict[str, str]:
    """Headers prontos para o POST: Host, Date, Digest, Content-Type e Signature."""
    date = http_date(moment)
    return {
        "Host": urlsplit(url).netloc,
        "Date": date,
        "Digest": compute_digest(body),
        "Content-Type": ACTIVITY_JSON,
        "Signature": sign(method, url, body, private_key_pem, key_id, date=date),
    }


# ---------------------------------------------------------------------------
# Verificação de requisições de entrada
# ---------------------------------------------------------------------------


class SignatureVerifier:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        replay_guard: ReplayGuard,
        settings_cache: InstanceSettingsCache,
        max_skew_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.replay_guard = replay_guard
        self.settings_cache = settings_cache
        self.max_skew = timedelta(seconds=max_skew_seconds)
        self.clock = clock

    async def verify(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        signature_header: str,
        body: bytes | str,
    ) -> bool:
        try:
            await self._verify(method, path, headers, signature_header, _as_bytes(body))
        except SignatureError as e:
            log.warning(f"Assinatura rejeitada ({type(e).__name__}): {e}")
            return False
        except Exception as e:
            log.warning(f"Erro ao verificar assinatura: {e}", exc_info=True)
            return False
        return True

    async def _verify(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        signature_header: str,
        body: bytes,
    ) -> None:
        lowered = {name.lower(): value for name, value in headers.items()}

        digest = lowered.get("digest")
        if digest is not None and not _digest_matches(digest, body):
            raise SignatureInvalid("Digest não corresponde ao corpo")

        date = lowered.get("date")
        if date is not None:
            self._check_clock_skew(date)

        params = parse_signature_header(signature_header)
        key_id = params.get("keyId")
        signature = params.get("signature")
        if not key_id or not signature:
            raise SignatureInvalid("keyId ou signature ausente")
        header_names = params.get("headers", "date").lower().split()

        if not await self.replay_guard.check_and_record(signature, date or ""):
            raise ReplayDetected(f"assinatura repetida para {key_id}")

        public_key_pem = await self._resolve_public_key(key_id)

        pairs = []
        for name in header_names:
            if name == "(request-target)":
                pairs.append((name, f"{method.lower()} {path}"))
            elif name in lowered:
                pairs.append((name, lowered[name]))
            else:
                raise SignatureInvalid(f"header assinado ausente: {name}")

        try:
            load_public_key(public_key_pem).verify(
                base64.b64decode(signature),
                build_signing_string(pairs).encode(),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except (InvalidSignature, ValueError) as e:
            raise SignatureInvalid("assinatura RSA inválida") from e

    def _check_clock_skew(self, date: str) -> None:
        try:
            sent_at = as_utc(parsedate_to_datetime(date))
        except (TypeError, ValueError) as e:
            raise ClockSkewExceeded(f"Date ilegível: {date!r}") from e
        if abs(self.clock() - sent_at) > self.max_skew:
            raise ClockSkewExceeded(f"Date fora da janela: {date!r}")

    async def _resolve_public_key(self, key_id: str) -> str:
        actor_url = actor_url_from_key_id(key_id)
        instance = await self.settings_cache.get()
        username = ActorIdentity(instance.domain).local_username(actor_url)

        if username is not None:
            async with self.session_factory() as session:
                local = await get_local_actor(session, username=username)
            if local is None:
                raise ActorUnresolvable(f"actor local desconhecido: {actor_url}")
            return local.public_key_pem

        return await self._fetch_remote_key(actor_url, key_id)

    async def _fetch_remote_key(self, actor_url: str, key_id: str) -> str:
        try:
            response = await self.http_client.get(
                actor_url, headers={"Accept": f"{ACTIVITY_JSON}, application/ld+json"}
            )
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ActorUnresolvable(f"falha ao buscar {actor_url}: {e}") from e

        public_key = document.get("publicKey") if isinstance(document, dict) else None
        if not isinstance(public_key, dict) or not public_key.get("publicKeyPem"):
            raise ActorUnresolvable(f"actor sem publicKey: {actor_url}")
        if public_key.get("owner") != actor_url:
            raise ActorUnresolvable(f"publicKey.owner não é {actor_url}")
        if public_key.get("id") != key_id:
            raise ActorUnresolvable(f"publicKey.id não é {key_id}")

        return public_key["publicKeyPem"]


def _digest_matches(header_value: str, body: bytes) -> bool:
    expected = compute_digest(body).split("=", 1)[1]
    for entry in header_value.split(","):
        algorithm, _, value = entry.strip().partition("=")
        if algorithm.upper() == "SHA-256":
            return value == expected
    return False

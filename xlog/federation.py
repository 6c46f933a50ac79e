"""
xlog/federation.py

Raiz de composição do núcleo de federação.

Monta todos os componentes a partir de uma fábrica de sessões e de um
httpx.AsyncClient, sem nenhum estado global. O app FastAPI guarda a
instância em `app.state.federation`; o worker standalone cria a sua.
"""

from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xlog.activitypub.inbox import InboxProcessor
from xlog.activitypub.replay import ReplayGuard
from xlog.activitypub.signatures import SignatureVerifier
from xlog.config import settings
from xlog.services.delivery import DeliveryService
from xlog.services.instance_settings import InstanceSettingsCache
from xlog.services.outbox import Outbox
from xlog.services.queue import DeliveryQueue
from xlog.services.retry import RetryScheduler


@dataclass
class Federation:
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    settings_cache: InstanceSettingsCache
    replay_guard: ReplayGuard
    verifier: SignatureVerifier
    queue: DeliveryQueue
    delivery: DeliveryService
    scheduler: RetryScheduler
    inbox: InboxProcessor
    outbox: Outbox


def build_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.http_timeout,
        headers={"User-Agent": f"{settings.get('instance_name', 'x-log')} (+https://{settings.domain})"},
        follow_redirects=True,
    )


def build_federation(
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
) -> Federation:
    settings_cache = InstanceSettingsCache(
        session_factory, ttl_seconds=settings.settings_cache_ttl_seconds
    )
    replay_guard = ReplayGuard(session_factory, ttl_seconds=settings.replay_ttl_seconds)
    verifier = SignatureVerifier(
        session_factory,
        http_client,
        replay_guard,
        settings_cache,
        max_skew_seconds=settings.signature_max_skew_seconds,
    )
    queue = DeliveryQueue(
        session_factory,
        visibility_timeout_seconds=settings.queue_visibility_timeout_seconds,
    )
    delivery = DeliveryService(
        session_factory,
        http_client,
        settings_cache,
        queue,
        max_attempts=settings.delivery_max_attempts,
    )
    scheduler = RetryScheduler(
        session_factory,
        queue,
        max_attempts=settings.delivery_max_attempts,
        base_ms=settings.delivery_backoff_base_ms,
        cap_ms=settings.delivery_backoff_cap_ms,
    )

    return Federation(
        session_factory=session_factory,
        http_client=http_client,
        settings_cache=settings_cache,
        replay_guard=replay_guard,
        verifier=verifier,
        queue=queue,
        delivery=delivery,
        scheduler=scheduler,
        inbox=InboxProcessor(session_factory, verifier, settings_cache, delivery),
        outbox=Outbox(session_factory, http_client, settings_cache, delivery),
    )

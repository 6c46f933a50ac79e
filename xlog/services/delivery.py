"""
xlog/services/delivery.py

Entrega de atividades assinadas para inboxes remotas.

Fluxo de um job (`process_job`):
1. Upsert da linha `deliveries` por `activity_id` (status=pending)
2. Create: carrega post + autor; falha se o post não existe ou é rascunho
   Accept/Follow: usa o snapshot gravado no enfileiramento
3. Grava o snapshot `activity_json` ANTES da chamada de rede
4. Assina e faz o POST com Content-Type, Signature, Date, Host e Digest
5. 2xx → sent; qualquer outra coisa → failed + last_error.
   attempt_count += 1 nos dois casos.
   Uma linha failed que já esgotou as tentativas não sai de failed.

Nenhuma exceção escapa de `process_job`: o erro vai para a linha de
`deliveries` e o RetryScheduler decide se tenta de novo.
"""

import json
import logging
from dataclasses import dataclass

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xlog.activitypub.actor import ActorIdentity
from xlog.activitypub.builder import build_article, build_create
from xlog.activitypub.keys import get_local_actor
from xlog.activitypub.signatures import signed_headers
from xlog.database import dialect_insert, new_uuid, utcnow
from xlog.errors import (
    DeliveryHTTPError,
    DeliveryNetworkError,
    MissingDeliveryMetadata,
    PostNotPublishable,
)
from xlog.models.delivery import FAILED, PENDING, RETRYING, SENT, Delivery
from xlog.models.local import Post, User
from xlog.services.instance_settings import InstanceSettingsCache
from xlog.services.queue import DeliveryJob, DeliveryQueue
from xlog.services.retry import MAX_ATTEMPTS

log = logging.getLogger(__name__)

IN_FLIGHT = (PENDING, RETRYING)


@dataclass(frozen=True)
class DeliveryOutcome:
    activity_id: str
    status: str
    attempt_count: int
    error: str | None = None


class DeliveryService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        settings_cache: InstanceSettingsCache,
        queue: DeliveryQueue,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.settings_cache = settings_cache
        self.queue = queue
        self.max_attempts = max_attempts

    # -----------------------------------------------------------------------
    # Enfileiramento
    # -----------------------------------------------------------------------

    async def enqueue(self, job: DeliveryJob) -> None:
        await self.queue.push(job)

    async def enqueue_snapshot(
        self,
        activity: dict,
        user_id: str,
        inbox_url: str,
        session: AsyncSession | None = None,
    ) -> str:
        """
        Registra uma atividade já montada (Accept, Follow) e a enfileira.

        A linha de `deliveries` e o job entram na mesma transação: ou os dois
        existem ou nenhum. Com `session`, usa a transação aberta pelo chamador.
        """
        job = DeliveryJob(activity_id=activity["id"], user_id=user_id, inbox_url=inbox_url)
        if session is not None:
            await self._record_snapshot(session, activity, user_id, inbox_url)
            await self.queue.push(job, session=session)
            return activity["id"]

        async with self.session_factory() as session:
            async with session.begin():
                await self._record_snapshot(session, activity, user_id, inbox_url)
                await self.queue.push(job, session=session)
        return activity["id"]

    # -----------------------------------------------------------------------
    # Processamento de um job
    # -----------------------------------------------------------------------

    async def process_job(self, job: DeliveryJob) -> DeliveryOutcome:
        try:
            delivery = await self._upsert_delivery(job)
            if delivery.status == SENT:
                log.info(f"Entrega {job.activity_id} já enviada, job duplicado ignorado")
                return DeliveryOutcome(job.activity_id, SENT, delivery.attempt_count)

            if delivery.status == FAILED:
                moved = await self._transition(
                    job.activity_id,
                    (FAILED,),
                    Delivery.attempt_count < self.max_attempts,
                    status=RETRYING,
                )
                if not moved and delivery.attempt_count >= self.max_attempts:
                    log.warning(
                        f"Entrega {job.activity_id} esgotou {self.max_attempts} tentativas, "
                        "job ignorado"
                    )
                    return DeliveryOutcome(
                        job.activity_id, FAILED, delivery.attempt_count, delivery.last_error
                    )

            user_id = job.user_id or delivery.user_id or ""
            post_id = job.post_id or delivery.post_id or ""
            inbox_url = job.inbox_url or delivery.remote_inbox or ""

            if delivery.activity_type == "Create":
                if not (user_id and post_id and inbox_url):
                    raise MissingDeliveryMetadata(
                        "Missing delivery metadata (user_id, post_id, inbox_url)"
                    )
                activity, signer_id = await self._build_create(job.activity_id, post_id)
                await self._save_activity_json(job.activity_id, activity)
            else:
                if not (user_id and inbox_url and delivery.activity_json):
                    raise MissingDeliveryMetadata(
                        "Missing delivery metadata (user_id, inbox_url, activity_json)"
                    )
                activity, signer_id = delivery.activity_json, user_id

            await self._post(inbox_url, activity, signer_id)
        except Exception as e:
            log.error(f"Falha na entrega {job.activity_id}: {e}", exc_info=True)
            return await self._record_outcome(job.activity_id, FAILED, error=str(e))

        log.info(f"Entrega {job.activity_id} enviada para {inbox_url}")
        return await self._record_outcome(job.activity_id, SENT)

    async def _upsert_delivery(self, job: DeliveryJob) -> Delivery:
        async with self.session_factory() as session:
            async with session.begin():
                stmt = dialect_insert(session, Delivery).values(
                    id=new_uuid(),
                    activity_id=job.activity_id,
                    activity_type="Create",
                    remote_inbox=job.inbox_url,
                    status=PENDING,
                    attempt_count=0,
                    user_id=job.user_id or None,
                    post_id=job.post_id or None,
                    updated_at=utcnow(),
                )
                await session.execute(
                    stmt.on_conflict_do_nothing(index_elements=["activity_id"])
                )

                delivery = (
                    await session.execute(
                        select(Delivery).where(Delivery.activity_id == job.activity_id)
                    )
                ).scalar_one()

                # completa metadados ausentes na linha com os do job
                changes = {}
                if job.user_id and not delivery.user_id:
                    changes["user_id"] = job.user_id
                if job.post_id and not delivery.post_id:
                    changes["post_id"] = job.post_id
                if job.inbox_url and not delivery.remote_inbox:
                    changes["remote_inbox"] = job.inbox_url
                for field, value in changes.items():
                    setattr(delivery, field, value)
        return delivery

    async def _record_snapshot(
        self, session: AsyncSession, activity: dict, user_id: str, inbox_url: str
    ) -> None:
        stmt = dialect_insert(session, Delivery).values(
            id=new_uuid(),
            activity_id=activity["id"],
            activity_type=activity["type"],
            remote_inbox=inbox_url,
            status=PENDING,
            attempt_count=0,
            user_id=user_id,
            activity_json=activity,
            updated_at=utcnow(),
        )
        await session.execute(stmt.on_conflict_do_nothing(index_elements=["activity_id"]))

    async def _build_create(self, activity_id: str, post_id: str) -> tuple[dict, str]:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(Post, User)
                    .join(User, User.id == Post.author_id)
                    .where(Post.id == post_id)
                )
            ).first()

        if row is None or row[0].published_at is None:
            raise PostNotPublishable(f"Post not found or not published: {post_id}")

        post, author = row
        domain = (await self.settings_cache.get()).domain
        actor_id = ActorIdentity(domain).actor_url(author.username)

        article = build_article(
            post.id,
            actor_id,
            post.title,
            post.content_html,
            post.published_at,
            post.hashtags or [],
            domain,
            summary=post.summary,
            banner_url=post.banner_url,
        )
        return build_create(activity_id, actor_id, article, post.published_at), author.id

    async def _save_activity_json(self, activity_id: str, activity: dict) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Delivery)
                    .where(Delivery.activity_id == activity_id)
                    .values(activity_json=activity, activity_type=activity["type"])
                    .execution_options(synchronize_session=False)
                )

    async def _post(self, inbox_url: str, activity: dict, signer_id: str) -> None:
        async with self.session_factory() as session:
            signer = await get_local_actor(session, user_id=signer_id)
        if signer is None:
            raise MissingDeliveryMetadata(f"User key not found: {signer_id}")

        body = json.dumps(activity).encode()
        headers = signed_headers(
            "POST", inbox_url, body, signer.private_key_pem, signer.key_id
        )

        try:
            response = await self.http_client.post(inbox_url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryNetworkError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise DeliveryHTTPError(response.status_code, response.text[:500])

    # -----------------------------------------------------------------------
    # Transições de estado (UPDATE condicional)
    # -----------------------------------------------------------------------

    async def _transition(
        self, activity_id: str, from_states: tuple, *conditions, **values
    ) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Delivery)
                    .where(
                        Delivery.activity_id == activity_id,
                        Delivery.status.in_(from_states),
                        *conditions,
                    )
                    .values(updated_at=utcnow(), **values)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount

    async def _record_outcome(
        self, activity_id: str, status: str, error: str | None = None
    ) -> DeliveryOutcome:
        values = {"status": status, "attempt_count": Delivery.attempt_count + 1}
        if status == FAILED:
            values["last_error"] = error

        changed = await self._transition(activity_id, IN_FLIGHT, **values)
        if not changed:
            log.warning(f"Entrega {activity_id} não estava em andamento, resultado descartado")

        async with self.session_factory() as session:
            delivery = (
                await session.execute(select(Delivery).where(Delivery.activity_id == activity_id))
            ).scalar_one_or_none()

        if delivery is None:
            return DeliveryOutcome(activity_id, status, 0, error)
        return DeliveryOutcome(activity_id, delivery.status, delivery.attempt_count, error)

    # -----------------------------------------------------------------------
    # Visão administrativa (somente leitura)
    # -----------------------------------------------------------------------

    async def failed_deliveries(self, limit: int = 100) -> list[Delivery]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Delivery)
                .where(Delivery.status == FAILED)
                .order_by(Delivery.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars())

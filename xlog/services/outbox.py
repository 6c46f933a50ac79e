"""
xlog/services/outbox.py

Atividades de saída iniciadas por um usuário local.

- `publish_post()`  — fan-out de um post publicado para as inboxes dos
  followers aprovados; cada inbox recebe seu próprio activity_id
- `follow_remote()` — registra Following(accepted=False) e enfileira o Follow
"""

import logging

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xlog.activitypub.actor import ActorIdentity, remote_inbox_url
from xlog.activitypub.builder import build_follow
from xlog.activitypub.keys import get_local_actor
from xlog.activitypub.signatures import ACTIVITY_JSON
from xlog.database import dialect_insert, new_uuid, utcnow
from xlog.errors import ActorUnresolvable, PostNotPublishable
from xlog.models.follower import Follower, Following
from xlog.models.local import Post
from xlog.services.delivery import DeliveryService
from xlog.services.instance_settings import InstanceSettingsCache
from xlog.services.queue import DeliveryJob

log = logging.getLogger(__name__)


class Outbox:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        settings_cache: InstanceSettingsCache,
        delivery: DeliveryService,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.settings_cache = settings_cache
        self.delivery = delivery

    async def publish_post(self, post_id: str) -> list[str]:
        """Enfileira um Create por inbox de follower. Devolve os activity_ids."""
        instance = await self.settings_cache.get()
        if not instance.federation_enabled:
            log.info(f"Federação desabilitada: post {post_id} não será entregue")
            return []

        async with self.session_factory() as session:
            post = await session.get(Post, post_id)
            if post is None or post.published_at is None:
                raise PostNotPublishable(f"Post not found or not published: {post_id}")

            inboxes = (
                await session.execute(
                    select(Follower.inbox_url)
                    .where(Follower.local_user_id == post.author_id, Follower.approved.is_(True))
                    .distinct()
                    .order_by(Follower.inbox_url)
                )
            ).scalars().all()

        identity = ActorIdentity(instance.domain)
        activity_ids = []
        for inbox_url in inboxes:
            activity_id = identity.new_activity_id()
            await self.delivery.enqueue(
                DeliveryJob(
                    activity_id=activity_id,
                    user_id=post.author_id,
                    post_id=post.id,
                    inbox_url=inbox_url,
                )
            )
            activity_ids.append(activity_id)

        log.info(f"Post {post_id} enfileirado para {len(activity_ids)} inbox(es)")
        return activity_ids

    async def follow_remote(self, user_id: str, remote_actor: str) -> Following:
        async with self.session_factory() as session:
            local = await get_local_actor(session, user_id=user_id)
            existing = (
                await session.execute(
                    select(Following).where(
                        Following.local_user_id == user_id,
                        Following.remote_actor == remote_actor,
                    )
                )
            ).scalar_one_or_none()
        if local is None:
            raise ActorUnresolvable(f"usuário local desconhecido: {user_id}")
        if existing is not None:
            return existing

        inbox_url = await self._resolve_inbox(remote_actor)
        identity = ActorIdentity((await self.settings_cache.get()).domain)
        follow = build_follow(
            identity.new_activity_id(), identity.actor_url(local.username), remote_actor
        )

        async with self.session_factory() as session:
            async with session.begin():
                stmt = dialect_insert(session, Following).values(
                    id=new_uuid(),
                    local_user_id=user_id,
                    remote_actor=remote_actor,
                    inbox_url=inbox_url,
                    activity_id=follow["id"],
                    accepted=False,
                    created_at=utcnow(),
                )
                result = await session.execute(
                    stmt.on_conflict_do_nothing(index_elements=["local_user_id", "remote_actor"])
                )
            following = (
                await session.execute(
                    select(Following).where(
                        Following.local_user_id == user_id,
                        Following.remote_actor == remote_actor,
                    )
                )
            ).scalar_one()

        # rowcount 0: uma requisição concorrente já registrou e enfileirou o Follow
        if result.rowcount == 1:
            await self.delivery.enqueue_snapshot(follow, user_id, inbox_url)
            log.info(f"{local.username} enviou Follow para {remote_actor}")
        return following

    async def _resolve_inbox(self, actor_url: str) -> str:
        try:
            response = await self.http_client.get(actor_url, headers={"Accept": ACTIVITY_JSON})
            response.raise_for_status()
            inbox = response.json().get("inbox")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            log.warning(f"Não foi possível buscar o actor {actor_url}: {e}")
            inbox = None
        return inbox if isinstance(inbox, str) and inbox else remote_inbox_url(actor_url)

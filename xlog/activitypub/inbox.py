"""
xlog/activitypub/inbox.py

Processamento das atividades recebidas em /ap/users/{username}/inbox.

Ordem fixa:
1. Parse do JSON                        → 400 se malformado
2. Verificação da assinatura (se houver) → 401 se inválida ou se o
   signatário (keyId) não é o actor da atividade; nada é gravado
3. Usuário local                        → 404 se não existe
4. Grava a atividade em `inbox_objects`, na mesma transação do efeito
5. Despacha pelo tipo:
   - Follow       → cria Follower(approved=True) e enfileira um Accept
   - Like         → posts.like_count + 1
   - Accept       → Following.accepted = True
   - Undo{Follow} → remove o Follower
   - Undo{Like}   → posts.like_count - 1, nunca abaixo de zero
   - demais       → só auditoria

Toda atividade aceita responde 202, com ou sem efeito colateral.
Uma atividade com `id` já registrado é aceita de novo sem reaplicar efeitos.
Se o efeito falha, o registro de auditoria é desfeito junto e a reentrega
do remetente é processada normalmente.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Mapping
from urllib.parse import urlsplit

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xlog.activitypub.activities import (
    AcceptActivity,
    Activity,
    CreateActivity,
    FollowActivity,
    LikeActivity,
    UndoActivity,
    UnknownActivity,
    parse_activity,
    type_name,
)
from xlog.activitypub.actor import ActorIdentity, actor_url_from_key_id, remote_inbox_url
from xlog.activitypub.builder import build_accept
from xlog.activitypub.keys import LocalActor, get_local_actor
from xlog.activitypub.signatures import SignatureVerifier, parse_signature_header
from xlog.database import dialect_insert, new_uuid, utcnow
from xlog.errors import MalformedActivity
from xlog.models.follower import Follower, Following
from xlog.models.inbox import InboxObject
from xlog.models.local import Post
from xlog.services.delivery import DeliveryService
from xlog.services.instance_settings import InstanceSettingsCache

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboxResult:
    status_code: int
    body: dict = field(default_factory=dict)


ACCEPTED = InboxResult(202, {"success": True})


class InboxProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: SignatureVerifier,
        settings_cache: InstanceSettingsCache,
        delivery: DeliveryService,
    ):
        self.session_factory = session_factory
        self.verifier = verifier
        self.settings_cache = settings_cache
        self.delivery = delivery

        self._handlers = {
            FollowActivity: self._on_follow,
            LikeActivity: self._on_like,
            AcceptActivity: self._on_accept,
            UndoActivity: self._on_undo,
            CreateActivity: self._on_audit_only,
            UnknownActivity: self._on_audit_only,
        }

    async def handle_inbound(
        self,
        username: str,
        signature_header: str | None,
        raw_body: bytes | str,
        headers: Mapping[str, str] | None = None,
        path: str | None = None,
    ) -> InboxResult:
        try:
            activity = parse_activity(json.loads(raw_body))
        except (ValueError, MalformedActivity) as e:
            log.warning(f"Atividade malformada para {username}: {e}")
            return InboxResult(400, {"error": "Malformed activity"})

        identity = ActorIdentity((await self.settings_cache.get()).domain)

        if signature_header:
            target = path or urlsplit(identity.inbox_url(username)).path
            valid = await self.verifier.verify(
                "POST", target, headers or {}, signature_header, raw_body
            )
            if not valid:
                return InboxResult(401, {"error": "Invalid signature"})

            key_id = parse_signature_header(signature_header).get("keyId", "")
            signer = actor_url_from_key_id(key_id)
            if signer != activity.actor:
                log.warning(f"{type_name(activity)} de {activity.actor} assinado por {signer}")
                return InboxResult(401, {"error": "Signer does not match actor"})

        async with self.session_factory() as session:
            actor = await get_local_actor(session, username=username)
        if actor is None:
            return InboxResult(404, {"error": "User not found"})

        # auditoria e efeito na mesma transação: se o handler falha, nada
        # fica gravado e a reentrega do remetente é processada do zero
        async with self.session_factory() as session:
            async with session.begin():
                if not await self._record(session, activity):
                    log.info(f"Atividade {activity.id} já processada, efeitos não reaplicados")
                    return ACCEPTED

                handler = self._handlers[type(activity)]
                await handler(session, actor, identity, activity)
        return ACCEPTED

    async def _record(self, session: AsyncSession, activity: Activity) -> bool:
        """Grava no log de auditoria. False se o `id` já estava registrado."""
        stmt = dialect_insert(session, InboxObject).values(
            id=new_uuid(),
            activity_id=activity.id,
            type=type_name(activity),
            actor=activity.actor,
            object_id=activity.object_id or activity.id or "",
            raw=activity.raw,
            received_at=utcnow(),
        )
        result = await session.execute(stmt.on_conflict_do_nothing(index_elements=["activity_id"]))
        return result.rowcount == 1

    # -----------------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------------

    async def _on_follow(
        self,
        session: AsyncSession,
        actor: LocalActor,
        identity: ActorIdentity,
        activity: FollowActivity,
    ) -> None:
        local_actor_url = identity.actor_url(actor.username)
        if not activity.actor:
            log.warning("Follow sem actor ignorado")
            return
        if activity.object_id and activity.object_id != local_actor_url:
            log.warning(f"Follow para {activity.object_id} entregue na inbox de {actor.username}")
            return

        inbox_url = remote_inbox_url(activity.actor)
        stmt = dialect_insert(session, Follower).values(
            id=new_uuid(),
            local_user_id=actor.user_id,
            remote_actor=activity.actor,
            inbox_url=inbox_url,
            approved=True,
            created_at=utcnow(),
        )
        result = await session.execute(
            stmt.on_conflict_do_nothing(index_elements=["local_user_id", "remote_actor"])
        )
        if result.rowcount == 1:
            log.info(f"Novo follower de {actor.username}: {activity.actor}")

        if not activity.id:
            log.warning(f"Follow de {activity.actor} sem id, Accept não enviado")
            return

        # Mastodon tem timeout curto: o Accept vai para a fila, nunca é
        # entregue dentro da requisição
        accept = build_accept(identity.new_activity_id(), local_actor_url, activity.id)
        await self.delivery.enqueue_snapshot(accept, actor.user_id, inbox_url, session=session)

    async def _on_like(
        self,
        session: AsyncSession,
        actor: LocalActor,
        identity: ActorIdentity,
        activity: LikeActivity,
    ) -> None:
        post_id = _post_id_from_url(activity.object_id)
        if post_id is None:
            return
        await session.execute(
            update(Post)
            .where(Post.id == post_id)
            .values(like_count=Post.like_count + 1)
            .execution_options(synchronize_session=False)
        )

    async def _on_accept(
        self,
        session: AsyncSession,
        actor: LocalActor,
        identity: ActorIdentity,
        activity: AcceptActivity,
    ) -> None:
        if not activity.object_id:
            return
        result = await session.execute(
            update(Following)
            .where(
                Following.local_user_id == actor.user_id,
                Following.activity_id == activity.object_id,
            )
            .values(accepted=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            log.info(f"Follow {activity.object_id} aceito por {activity.actor}")

    async def _on_undo(
        self,
        session: AsyncSession,
        actor: LocalActor,
        identity: ActorIdentity,
        activity: UndoActivity,
    ) -> None:
        inner = activity.inner or await self._lookup_undone(session, activity.object_id)
        if inner is None:
            log.info(f"Undo de objeto desconhecido ignorado: {activity.object_id}")
            return
        if inner.actor and inner.actor != activity.actor:
            log.warning(f"Undo de {activity.actor} para atividade de {inner.actor} ignorado")
            return

        if isinstance(inner, FollowActivity):
            await session.execute(
                delete(Follower).where(
                    Follower.local_user_id == actor.user_id,
                    Follower.remote_actor == activity.actor,
                )
            )
            log.info(f"{activity.actor} deixou de seguir {actor.username}")
        elif isinstance(inner, LikeActivity):
            post_id = _post_id_from_url(inner.object_id)
            if post_id is None:
                return
            await session.execute(
                update(Post)
                .where(Post.id == post_id, Post.like_count > 0)
                .values(like_count=Post.like_count - 1)
                .execution_options(synchronize_session=False)
            )

    async def _on_audit_only(
        self,
        session: AsyncSession,
        actor: LocalActor,
        identity: ActorIdentity,
        activity: Activity,
    ) -> None:
        log.debug(f"{type_name(activity)} de {activity.actor} registrado sem efeito")

    async def _lookup_undone(
        self, session: AsyncSession, activity_id: str | None
    ) -> Activity | None:
        """Resolve um Undo cujo objeto veio só como id, pelo log de auditoria."""
        if not activity_id:
            return None
        raw = (
            await session.execute(
                select(InboxObject.raw).where(InboxObject.activity_id == activity_id)
            )
        ).scalar_one_or_none()
        if raw is None:
            return None
        try:
            return parse_activity(raw)
        except MalformedActivity:
            return None


def _post_id_from_url(url: str | None) -> str | None:
    # "https://x.log/post/123" → "123"
    if not url:
        return None
    segment = urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1]
    return segment or None

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Body, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apkit.server.app import ActivityPubServer
from apkit.server.responses import ActivityResponse
from apkit.models import (
    Nodeinfo, NodeinfoSoftware, NodeinfoServices,
    NodeinfoUsage, NodeinfoUsageUsers,
)
from apkit.client import WebfingerResource, WebfingerResult, WebfingerLink

from xlog import database
from xlog.activitypub.actor import ActorIdentity
from xlog.activitypub.builder import build_actor, build_article, build_collection, build_create
from xlog.activitypub.keys import get_local_actor
from xlog.config import settings
from xlog.database import get_session
from xlog.errors import PostNotPublishable
from xlog.federation import Federation, build_federation, build_http_client
from xlog.models.follower import Follower, Following
from xlog.models.local import Post, User

logging.basicConfig(level=logging.INFO)

OUTBOX_PAGE_SIZE = 20


class ActivityJSONResponse(JSONResponse):
    media_type = "application/activity+json"


@asynccontextmanager
async def lifespan(app):
    import workers.delivery_worker
    import workers.retry_scheduler

    engine = database.build_engine(settings.database_url)
    await database.init_db(engine)
    http_client = build_http_client()
    federation = build_federation(database.build_session_factory(engine), http_client)
    app.state.federation = federation

    tasks = []
    if settings.run_workers:
        tasks.append(asyncio.create_task(workers.delivery_worker.run_worker(
            federation.delivery,
            federation.queue,
            pop_timeout=settings.queue_pop_timeout_seconds,
        )))
        tasks.append(asyncio.create_task(workers.retry_scheduler.run_scheduler(
            federation.scheduler,
            interval=settings.retry_interval_seconds,
        )))
    yield
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await http_client.aclose()
    await engine.dispose()


api = ActivityPubServer(lifespan=lifespan)


def get_federation(request: Request) -> Federation:
    return request.app.state.federation


async def get_identity(federation: Federation = Depends(get_federation)) -> ActorIdentity:
    return ActorIdentity((await federation.settings_cache.get()).domain)


async def require_admin(request: Request) -> None:
    token = settings.get("admin_token", "")
    if not token or request.headers.get("authorization") != f"Bearer {token}":
        raise HTTPException(status_code=403, detail="Forbidden")


async def _find_user(session: AsyncSession, username: str) -> User:
    user = (
        await session.execute(select(User).where(User.username == username))
    ).scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ---------------------------------------------------------------------------
# Actor e coleções
# ---------------------------------------------------------------------------

@api.get("/ap/users/{username}")
async def get_actor(
    username: str,
    session: AsyncSession = Depends(get_session),
    identity: ActorIdentity = Depends(get_identity),
):
    actor = await get_local_actor(session, username=username)
    if actor is None:
        return JSONResponse({"error": "User not found"}, status_code=404)
    return ActivityJSONResponse(
        build_actor(
            actor.username,
            actor.display_name,
            actor.summary,
            actor.public_key_pem,
            identity.domain,
        )
    )


@api.get("/ap/users/{username}/outbox")
async def get_outbox(
    username: str,
    session: AsyncSession = Depends(get_session),
    identity: ActorIdentity = Depends(get_identity),
):
    user = await _find_user(session, username)
    posts = (
        await session.execute(
            select(Post)
            .where(Post.author_id == user.id, Post.published_at.is_not(None))
            .order_by(Post.published_at.desc())
            .limit(OUTBOX_PAGE_SIZE)
        )
    ).scalars().all()

    actor_id = identity.actor_url(username)
    activities = []
    for post in posts:
        article = build_article(
            post.id,
            actor_id,
            post.title,
            post.content_html,
            post.published_at,
            post.hashtags or [],
            identity.domain,
            summary=post.summary,
            banner_url=post.banner_url,
        )
        activities.append(
            build_create(f"{article['id']}/activity", actor_id, article, post.published_at)
        )

    return ActivityJSONResponse(
        build_collection(identity.outbox_url(username), activities, ordered=True)
    )


@api.get("/ap/users/{username}/followers")
async def get_followers(
    username: str,
    session: AsyncSession = Depends(get_session),
    identity: ActorIdentity = Depends(get_identity),
):
    user = await _find_user(session, username)
    actors = (
        await session.execute(
            select(Follower.remote_actor)
            .where(Follower.local_user_id == user.id, Follower.approved.is_(True))
            .order_by(Follower.created_at)
        )
    ).scalars().all()
    return ActivityJSONResponse(build_collection(identity.followers_url(username), list(actors)))


@api.get("/ap/users/{username}/following")
async def get_following(
    username: str,
    session: AsyncSession = Depends(get_session),
    identity: ActorIdentity = Depends(get_identity),
):
    user = await _find_user(session, username)
    actors = (
        await session.execute(
            select(Following.remote_actor)
            .where(Following.local_user_id == user.id, Following.accepted.is_(True))
            .order_by(Following.created_at)
        )
    ).scalars().all()
    return ActivityJSONResponse(build_collection(identity.following_url(username), list(actors)))


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

@api.post("/ap/users/{username}/inbox")
async def post_inbox(
    username: str,
    request: Request,
    federation: Federation = Depends(get_federation),
):
    body = await request.body()
    path = request.url.path
    if request.url.query:
        path += f"?{request.url.query}"

    result = await federation.inbox.handle_inbound(
        username,
        request.headers.get("signature"),
        body,
        headers=request.headers,
        path=path,
    )
    return JSONResponse(result.body, status_code=result.status_code)


# ---------------------------------------------------------------------------
# Descoberta: WebFinger, NodeInfo, host-meta
# ---------------------------------------------------------------------------

@api.webfinger()
async def webfinger(request: Request, acct: WebfingerResource) -> Response:
    federation: Federation = request.app.state.federation
    identity = ActorIdentity((await federation.settings_cache.get()).domain)
    if acct.host != identity.domain:
        return JSONResponse({"error": "Not found"}, status_code=404)

    async with federation.session_factory() as session:
        actor = await get_local_actor(session, username=acct.username)
    if actor is None:
        return JSONResponse({"error": "Not found"}, status_code=404)

    links = [
        WebfingerLink(
            rel="self",
            type="application/activity+json",
            href=identity.actor_url(actor.username),
        ),
        WebfingerLink(
            rel="http://webfinger.net/rel/profile-page",
            type="text/html",
            href=identity.profile_url(actor.username),
        ),
    ]
    result = WebfingerResult(subject=acct, links=links)
    return JSONResponse(result.to_json(), media_type="application/jrd+json")


@api.nodeinfo("/nodeinfo/2.1", "2.1")
async def nodeinfo():
    federation: Federation = api.state.federation
    instance = await federation.settings_cache.get()
    async with federation.session_factory() as session:
        total_users = (await session.execute(select(func.count(User.id)))).scalar_one()
        local_posts = (
            await session.execute(
                select(func.count(Post.id)).where(Post.published_at.is_not(None))
            )
        ).scalar_one()

    return ActivityResponse(
        Nodeinfo(
            version="2.1",
            software=NodeinfoSoftware(name="x-log", version="0.1.0"),
            protocols=["activitypub"],
            services=NodeinfoServices(inbound=[], outbound=[]),
            openRegistrations=instance.open_registrations,
            usage=NodeinfoUsage(users=NodeinfoUsageUsers(total=total_users)),
            metadata={
                "nodeName": instance.name,
                "nodeDescription": instance.description,
                "localPosts": local_posts,
            },
        )
    )


@api.get("/.well-known/host-meta")
async def host_meta(identity: ActorIdentity = Depends(get_identity)):
    xml = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<XRD xmlns="http://docs.oasis-open.org/ns/xri/xrd-1.0">\n'
        f'  <Link rel="lrdd" template="{identity.base}/.well-known/webfinger?resource={{uri}}"/>\n'
        "</XRD>"
    )
    return Response(xml, media_type="application/xrd+xml")


@api.get("/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Integração com os colaboradores (editor de posts, tela de configurações)
# e visão administrativa das entregas que falharam
# ---------------------------------------------------------------------------

@api.get("/api/admin/deliveries/failed", dependencies=[Depends(require_admin)])
async def failed_deliveries(federation: Federation = Depends(get_federation)):
    items = await federation.delivery.failed_deliveries()
    return {
        "items": [
            {
                "activity_id": d.activity_id,
                "remote_inbox": d.remote_inbox,
                "status": d.status,
                "attempt_count": d.attempt_count,
                "last_error": d.last_error,
                "updated_at": database.as_utc(d.updated_at).isoformat(),
                "activity_json": d.activity_json,
            }
            for d in items
        ]
    }


@api.post("/api/admin/posts/{post_id}/federate", dependencies=[Depends(require_admin)])
async def federate_post(post_id: str, federation: Federation = Depends(get_federation)):
    try:
        activity_ids = await federation.outbox.publish_post(post_id)
    except PostNotPublishable:
        raise HTTPException(status_code=404, detail="Post not found or not published")
    return JSONResponse({"queued": activity_ids}, status_code=202)


@api.post("/api/admin/users/{username}/follow", dependencies=[Depends(require_admin)])
async def follow(
    username: str,
    actor: str = Body(..., embed=True),
    federation: Federation = Depends(get_federation),
):
    async with federation.session_factory() as session:
        local = await get_local_actor(session, username=username)
    if local is None:
        raise HTTPException(status_code=404, detail="User not found")
    following = await federation.outbox.follow_remote(local.user_id, actor)
    return JSONResponse(
        {"activity_id": following.activity_id, "accepted": following.accepted},
        status_code=202,
    )


@api.post("/api/admin/instance-settings/invalidate", dependencies=[Depends(require_admin)])
async def invalidate_instance_settings(federation: Federation = Depends(get_federation)):
    federation.settings_cache.invalidate()
    return Response(status_code=204)

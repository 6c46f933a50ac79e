"""
xlog/activitypub/builder.py

Construção dos objetos ActivityStreams (JSON-LD) publicados pela instância.

Funções puras: recebem todos os dados explicitamente, não consultam banco
nem settings, e devolvem dicts prontos para `json.dumps`.
"""

from datetime import datetime

from xlog.activitypub.actor import ActorIdentity
from xlog.database import as_utc

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"
PUBLIC = "https://www.w3.org/ns/activitystreams#Public"


def format_published(value: datetime) -> str:
    # mesmo formato de Date.toISOString(): milissegundos e sufixo Z
    return as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_actor(
    username: str,
    display_name: str,
    summary: str,
    public_key_pem: str,
    domain: str,
) -> dict:
    identity = ActorIdentity(domain)
    actor_id = identity.actor_url(username)

    return {
        "@context": [AS_CONTEXT, SECURITY_CONTEXT],
        "id": actor_id,
        "type": "Person",
        "preferredUsername": username,
        "name": display_name,
        "summary": summary,
        "inbox": identity.inbox_url(username),
        "outbox": identity.outbox_url(username),
        "followers": identity.followers_url(username),
        "following": identity.following_url(username),
        "publicKey": {
            "id": identity.key_id(username),
            "owner": actor_id,
            "publicKeyPem": public_key_pem,
        },
    }


def build_article(
    post_id: str,
    actor_id: str,
    title: str,
    content_html: str,
    published_at: datetime,
    hashtags: list[str],
    domain: str,
    summary: str | None = None,
    banner_url: str | None = None,
) -> dict:
    article_id = ActorIdentity(domain).post_url(post_id)

    article = {
        "@context": [AS_CONTEXT],
        "id": article_id,
        "url": article_id,
        "type": "Article",
        "attributedTo": actor_id,
        "name": title,
        "content": content_html,
        "tag": [{"type": "Hashtag", "name": f"#{tag}"} for tag in hashtags],
        "published": format_published(published_at),
    }
    # campos opcionais são omitidos, nunca enviados como null
    if summary:
        article["summary"] = summary
    if banner_url:
        article["image"] = banner_url
    return article


def build_create(
    activity_id: str,
    actor_id: str,
    article: dict,
    published_at: datetime,
) -> dict:
    return {
        "@context": [AS_CONTEXT],
        "id": activity_id,
        "type": "Create",
        "actor": actor_id,
        "published": format_published(published_at),
        "to": [PUBLIC],
        "object": article,
    }


def build_accept(activity_id: str, actor_id: str, follow_activity_id: str) -> dict:
    return {
        "@context": [AS_CONTEXT],
        "id": activity_id,
        "type": "Accept",
        "actor": actor_id,
        "object": follow_activity_id,
    }


def build_follow(activity_id: str, actor_id: str, target_actor: str) -> dict:
    return {
        "@context": [AS_CONTEXT],
        "id": activity_id,
        "type": "Follow",
        "actor": actor_id,
        "object": target_actor,
    }


def build_collection(collection_id: str, items: list, ordered: bool = False) -> dict:
    items_key = "orderedItems" if ordered else "items"
    return {
        "@context": AS_CONTEXT,
        "id": collection_id,
        "type": "OrderedCollection",
        "totalItems": len(items),
        items_key: items,
    }

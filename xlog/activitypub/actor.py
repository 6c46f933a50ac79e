"""
xlog/activitypub/actor.py

URLs canônicas dos actors locais, derivadas de (username, domínio).

    https://<domain>/ap/users/<username>            → actor
    https://<domain>/ap/users/<username>/inbox      → inbox
    https://<domain>/ap/users/<username>#main-key   → keyId
    https://<domain>/post/<post_id>                 → Article
"""

import uuid
from dataclasses import dataclass
from urllib.parse import urlsplit


@dataclass(frozen=True)
class ActorIdentity:
    domain: str

    @property
    def base(self) -> str:
        return f"https://{self.domain}"

    def actor_url(self, username: str) -> str:
        return f"{self.base}/ap/users/{username}"

    def inbox_url(self, username: str) -> str:
        return f"{self.actor_url(username)}/inbox"

    def outbox_url(self, username: str) -> str:
        return f"{self.actor_url(username)}/outbox"

    def followers_url(self, username: str) -> str:
        return f"{self.actor_url(username)}/followers"

    def following_url(self, username: str) -> str:
        return f"{self.actor_url(username)}/following"

    def key_id(self, username: str) -> str:
        return f"{self.actor_url(username)}#main-key"

    def post_url(self, post_id: str) -> str:
        return f"{self.base}/post/{post_id}"

    def profile_url(self, username: str) -> str:
        return f"{self.base}/u/{username}"

    def new_activity_id(self) -> str:
        return f"{self.base}/ap/activities/{uuid.uuid4()}"

    def local_username(self, url: str) -> str | None:
        """
        Username do actor local referenciado por `url` (actor ou keyId),
        ou None se a URL não pertence a esta instância.
        """
        parts = urlsplit(url)
        if parts.netloc != self.domain:
            return None
        segments = parts.path.strip("/").split("/")
        if len(segments) != 3 or segments[:2] != ["ap", "users"] or not segments[2]:
            return None
        return segments[2]


def actor_url_from_key_id(key_id: str) -> str:
    # "https://mastodon.social/users/fulano#main-key" → ".../users/fulano"
    return key_id.split("#", 1)[0]


def remote_inbox_url(actor_url: str) -> str:
    return actor_url.rstrip("/") + "/inbox"

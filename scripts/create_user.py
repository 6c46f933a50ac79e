"""
Cria um usuário local com o par de chaves RSA do seu actor.
Uso: uv run python -m scripts.create_user alice "Alice"
"""

import asyncio
import sys

from xlog.activitypub.actor import ActorIdentity
from xlog.activitypub.keys import provision_local_actor
from xlog.config import settings
from xlog.database import build_engine, build_session_factory, init_db


async def create_user(username: str, display_name: str | None = None) -> str:
    engine = build_engine(settings.database_url)
    try:
        await init_db(engine)
        session_factory = build_session_factory(engine)
        async with session_factory() as session:
            async with session.begin():
                user = await provision_local_actor(
                    session, ActorIdentity(settings.domain), username, display_name
                )
        return user.id
    finally:
        await engine.dispose()


def main() -> None:
    if len(sys.argv) < 2:
        sys.exit("uso: python -m scripts.create_user <username> [display_name]")

    username = sys.argv[1]
    display_name = sys.argv[2] if len(sys.argv) > 2 else None
    user_id = asyncio.run(create_user(username, display_name))

    print(f"✓ usuário {username} criado ({user_id}), keyId "
          f"{ActorIdentity(settings.domain).key_id(username)}")


if __name__ == "__main__":
    main()

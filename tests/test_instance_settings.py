"""
Testes para xlog/services/instance_settings.py

Cobre:
- sem linha no banco → valores do Dynaconf, sem cache
- com linha → valores do banco, cacheados até o TTL ou invalidate()
"""

import pytest
from sqlalchemy import update

from xlog.models.local import InstanceSettings
from xlog.services.instance_settings import InstanceSettingsCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def _insert_row(session_factory, **fields):
    async with session_factory() as session:
        async with session.begin():
            session.add(
                InstanceSettings(
                    id=1,
                    instance_name=fields.get("name", "Meu x-log"),
                    instance_domain=fields.get("domain", "blog.test"),
                    instance_description=fields.get("description"),
                    open_registrations=fields.get("open_registrations", False),
                    federation_enabled=fields.get("federation_enabled", True),
                )
            )


async def _rename(session_factory, name):
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(InstanceSettings).where(InstanceSettings.id == 1).values(instance_name=name)
            )


@pytest.mark.asyncio
async def test_falls_back_to_dynaconf_without_row(settings_cache):
    config = await settings_cache.get()

    assert config.domain == "x.test"
    assert config.name == "x-log de teste"
    assert config.federation_enabled is True


@pytest.mark.asyncio
async def test_row_created_after_fallback_is_seen(session_factory, settings_cache):
    await settings_cache.get()
    await _insert_row(session_factory)

    assert (await settings_cache.get()).domain == "blog.test"


@pytest.mark.asyncio
async def test_row_values_are_cached(session_factory, settings_cache):
    await _insert_row(session_factory, open_registrations=True, description="Blog")
    first = await settings_cache.get()

    await _rename(session_factory, "Outro nome")

    assert (await settings_cache.get()) is first
    assert first.open_registrations is True
    assert first.description == "Blog"


@pytest.mark.asyncio
async def test_invalidate_forces_reload(session_factory, settings_cache):
    await _insert_row(session_factory)
    await settings_cache.get()
    await _rename(session_factory, "Outro nome")

    settings_cache.invalidate()

    assert (await settings_cache.get()).name == "Outro nome"


@pytest.mark.asyncio
async def test_ttl_expiry_reloads(session_factory):
    clock = FakeClock()
    cache = InstanceSettingsCache(session_factory, ttl_seconds=60, clock=clock)
    await _insert_row(session_factory)
    await cache.get()
    await _rename(session_factory, "Outro nome")

    clock.now += 30
    assert (await cache.get()).name == "Meu x-log"

    clock.now += 31
    assert (await cache.get()).name == "Outro nome"

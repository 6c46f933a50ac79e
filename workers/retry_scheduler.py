"""
workers/retry_scheduler.py

Loop periódico do RetryScheduler: um tick a cada 60s por padrão.
"""

import asyncio
import logging

from xlog.services.retry import RetryScheduler

log = logging.getLogger(__name__)


async def run_scheduler(
    scheduler: RetryScheduler,
    interval: float = 60.0,
    stop: asyncio.Event | None = None,
) -> None:
    log.info("RetryScheduler iniciado")
    stop = stop or asyncio.Event()
    while not stop.is_set():
        try:
            await scheduler.tick()
        except Exception as e:
            log.error(f"Erro no RetryScheduler: {e}", exc_info=True)

        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
    log.info("RetryScheduler encerrado")

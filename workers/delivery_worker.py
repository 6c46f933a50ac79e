"""
workers/delivery_worker.py

Worker assíncrono que consome a fila durável de entregas.

Fluxo:
1. Bloqueia até 5s esperando um job (o timeout só serve para checar `stop`)
2. Entrega via DeliveryService.process_job; o resultado fica em `deliveries`
3. Confirma o job (ack); se o processo morrer antes disso, o job volta a
   ficar visível quando a reivindicação expira

Pode rodar dentro do app (lifespan) ou como processo separado:
    uv run python -m workers.delivery_worker
Vários processos podem consumir a mesma fila ao mesmo tempo.
"""

import asyncio
import logging

from xlog.services.delivery import DeliveryService
from xlog.services.queue import DeliveryQueue

log = logging.getLogger(__name__)


async def run_worker(
    delivery: DeliveryService,
    queue: DeliveryQueue,
    pop_timeout: float = 5.0,
    stop: asyncio.Event | None = None,
) -> None:
    log.info("Worker de entregas iniciado")
    while stop is None or not stop.is_set():
        try:
            claimed = await queue.pop(timeout=pop_timeout)
            if claimed is None:
                continue
            outcome = await delivery.process_job(claimed.job)
            await queue.ack(claimed)
            log.info(
                f"Job {outcome.activity_id}: status={outcome.status} "
                f"tentativas={outcome.attempt_count}"
            )
        except Exception as e:
            log.error(f"Erro no worker: {e}", exc_info=True)
            # banco indisponível não deve virar loop quente
            await asyncio.sleep(1)
    log.info("Worker de entregas encerrado")


async def main() -> None:
    from workers.retry_scheduler import run_scheduler
    from xlog.config import settings
    from xlog.database import build_engine, build_session_factory, init_db
    from xlog.federation import build_federation, build_http_client

    engine = build_engine(settings.database_url)
    await init_db(engine)
    http_client = build_http_client()
    federation = build_federation(build_session_factory(engine), http_client)

    try:
        await asyncio.gather(
            run_worker(
                federation.delivery,
                federation.queue,
                pop_timeout=settings.queue_pop_timeout_seconds,
            ),
            run_scheduler(federation.scheduler, interval=settings.retry_interval_seconds),
        )
    finally:
        await http_client.aclose()
        await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())

"""
xlog/services/retry.py

Reagendamento de entregas que falharam.

A cada tick, percorre `deliveries` com status=failed e attempt_count < 5.
Uma entrega volta para a fila quando

    agora >= updated_at + min(1000ms * 2^attempt_count, 1h)

A transição failed → retrying é um UPDATE condicional feito na mesma
transação do push: dois schedulers concorrentes nunca reenfileiram a mesma
entrega, e uma linha retrying sempre tem um job na fila.
Com 5 tentativas esgotadas a entrega fica failed para sempre e aparece
apenas na listagem administrativa.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xlog.database import as_utc, utcnow
from xlog.models.delivery import FAILED, RETRYING, Delivery
from xlog.services.queue import DeliveryJob, DeliveryQueue

log = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 3_600_000


def backoff_ms(attempt_count: int, base_ms: int = BACKOFF_BASE_MS, cap_ms: int = BACKOFF_CAP_MS) -> int:
    # o expoente é limitado antes da potência para não gerar inteiros enormes
    if attempt_count < 0:
        attempt_count = 0
    if attempt_count >= 64:
        return cap_ms
    return min(base_ms * 2**attempt_count, cap_ms)


class RetryScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: DeliveryQueue,
        max_attempts: int = MAX_ATTEMPTS,
        base_ms: int = BACKOFF_BASE_MS,
        cap_ms: int = BACKOFF_CAP_MS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.max_attempts = max_attempts
        self.base_ms = base_ms
        self.cap_ms = cap_ms
        self.clock = clock

    def next_eligible_at(self, delivery: Delivery) -> datetime:
        delay = backoff_ms(delivery.attempt_count, self.base_ms, self.cap_ms)
        return as_utc(delivery.updated_at) + timedelta(milliseconds=delay)

    async def tick(self) -> list[str]:
        """Reenfileira as entregas elegíveis e devolve seus activity_ids."""
        now = self.clock()

        async with self.session_factory() as session:
            candidates = list(
                (
                    await session.execute(
                        select(Delivery).where(
                            Delivery.status == FAILED,
                            Delivery.attempt_count < self.max_attempts,
                        )
                    )
                ).scalars()
            )

        requeued = []
        for delivery in candidates:
            if now < self.next_eligible_at(delivery):
                continue
            if not await self._claim_and_push(delivery, now):
                continue
            requeued.append(delivery.activity_id)

        if requeued:
            log.info(f"RetryScheduler reenfileirou {len(requeued)} entrega(s)")
        return requeued

    async def _claim_and_push(self, delivery: Delivery, now: datetime) -> bool:
        # a transição e o job entram na mesma transação
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Delivery)
                    .where(
                        Delivery.activity_id == delivery.activity_id,
                        Delivery.status == FAILED,
                        Delivery.attempt_count == delivery.attempt_count,
                    )
                    .values(status=RETRYING, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False
                await self.queue.push(
                    DeliveryJob(
                        activity_id=delivery.activity_id,
                        user_id=delivery.user_id or "",
                        post_id=delivery.post_id or "",
                        inbox_url=delivery.remote_inbox,
                    ),
                    session=session,
                )
        return True

"""
xlog/services/queue.py

Fila durável de entregas, armazenada na tabela `delivery_jobs`.

- `push()` enfileira um DeliveryJob (FIFO pela chave autoincremental)
- `pop()`  bloqueia até `timeout` segundos esperando um job visível e o
           reivindica com um UPDATE condicional; o job fica invisível por
           `visibility_timeout` segundos
- `ack()`  remove o job depois que o resultado foi gravado em `deliveries`

Um worker que morre entre o pop e o ack não perde o job: quando a
reivindicação expira ele volta a ser entregue (at-least-once). Vários
workers podem consumir a mesma fila e só um vence o UPDATE condicional.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xlog.database import utcnow
from xlog.models.delivery import DeliveryJobRow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryJob:
    activity_id: str
    user_id: str = ""
    post_id: str = ""
    inbox_url: str = ""


@dataclass(frozen=True)
class ClaimedJob:
    receipt: int
    job: DeliveryJob
    # >1 quando o job está sendo reentregue após expirar
    deliveries: int


class DeliveryQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        visibility_timeout_seconds: float = 300,
        poll_interval: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self.poll_interval = poll_interval
        self.clock = clock

    async def push(self, job: DeliveryJob, session: AsyncSession | None = None) -> int:
        """Enfileira o job. Com `session`, entra na transação do chamador."""
        if session is None:
            async with self.session_factory() as session:
                async with session.begin():
                    return await self.push(job, session=session)

        row = DeliveryJobRow(
            activity_id=job.activity_id,
            user_id=job.user_id,
            post_id=job.post_id,
            inbox_url=job.inbox_url,
        )
        session.add(row)
        await session.flush()
        log.info(f"Job enfileirado: {job.activity_id} → {job.inbox_url}")
        return row.id

    async def pop(self, timeout: float = 5.0) -> ClaimedJob | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            claimed = await self._try_claim()
            if claimed is not None:
                return claimed
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def ack(self, claimed: ClaimedJob) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(DeliveryJobRow).where(DeliveryJobRow.id == claimed.receipt)
                )

    async def size(self) -> int:
        async with self.session_factory() as session:
            return (await session.execute(select(func.count(DeliveryJobRow.id)))).scalar_one()

    async def _try_claim(self) -> ClaimedJob | None:
        now = self.clock()
        visible = or_(
            DeliveryJobRow.claimed_until.is_(None),
            DeliveryJobRow.claimed_until < now,
        )

        async with self.session_factory() as session:
            async with session.begin():
                row = (
                    await session.execute(
                        select(DeliveryJobRow).where(visible).order_by(DeliveryJobRow.id).limit(1)
                    )
                ).scalar_one_or_none()
                if row is None:
                    return None

                result = await session.execute(
                    update(DeliveryJobRow)
                    .where(DeliveryJobRow.id == row.id, visible)
                    .values(
                        claimed_until=now + self.visibility_timeout,
                        deliveries=DeliveryJobRow.deliveries + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # outro worker reivindicou o mesmo job entre o SELECT e o UPDATE
                    return None

                job = DeliveryJob(
                    activity_id=row.activity_id,
                    user_id=row.user_id or "",
                    post_id=row.post_id or "",
                    inbox_url=row.inbox_url or "",
                )
                deliveries = (row.deliveries or 0) + 1

        if deliveries > 1:
            log.warning(f"Job {job.activity_id} reentregue (tentativa de consumo {deliveries})")
        return ClaimedJob(receipt=row.id, job=job, deliveries=deliveries)

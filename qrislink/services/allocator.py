"""Unique amount allocation for telling apart orders with equal totals."""
from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Iterator

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import UniqueAmountReservation, utc_now
from ..monitoring import record_allocation
from .errors import err_pool_exhausted, err_required_field

logger = logging.getLogger("qrislink.allocator")


def format_unique_amount(value: int) -> str:
    return f"{value:03d}"


def candidate_amounts(pool_size: int, rng: random.Random | None = None) -> Iterator[str]:
    """Yield each value of ``1..pool_size`` exactly once, in random order."""

    values = list(range(1, pool_size + 1))
    (rng or random.Random()).shuffle(values)
    for value in values:
        yield format_unique_amount(value)


class UniqueAmountAllocator:
    """Reserve a 3-digit disambiguation amount per order reference.

    Exclusivity comes from the UNIQUE constraint on the reservation value: a
    failed insert means another handler took the value first, and the next
    candidate is tried. Nothing here relies on in-process locking.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        pool_size: int | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ):
        self.session = session
        self.pool_size = pool_size or settings.unique_amount_pool_size
        self.ttl = timedelta(seconds=ttl_seconds or settings.unique_amount_ttl_seconds)
        self.clock = clock
        self.rng = rng

    async def reserve(self, order_reference: str) -> str:
        if not order_reference:
            raise err_required_field("order reference is required")

        now = self.clock()
        existing = await self.active_for_order(order_reference, now=now)
        if existing:
            logger.info(
                "reusing unique amount",
                extra={"order_reference": order_reference, "unique_amount": existing.value},
            )
            record_allocation("reused")
            return existing.value

        purged = await self._purge_expired(now)
        taken = await self._active_values(now)
        attempts = 0
        for candidate in candidate_amounts(self.pool_size, self.rng):
            if candidate in taken:
                continue
            attempts += 1
            self.session.add(
                UniqueAmountReservation(
                    value=candidate,
                    order_reference=order_reference,
                    created_at=now,
                    expires_at=now + self.ttl,
                )
            )
            try:
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                logger.info(
                    "unique amount taken concurrently",
                    extra={"order_reference": order_reference, "unique_amount": candidate},
                )
                continue

            logger.info(
                "unique amount reserved",
                extra={
                    "order_reference": order_reference,
                    "unique_amount": candidate,
                    "attempts": attempts,
                    "purged": purged,
                },
            )
            record_allocation("allocated")
            return candidate

        record_allocation("exhausted")
        logger.error(
            "unique amount pool exhausted",
            extra={"order_reference": order_reference, "pool_size": self.pool_size, "attempts": attempts},
        )
        raise err_pool_exhausted(f"No unique amounts available (pool of {self.pool_size} in use)")

    async def active_for_order(self, order_reference: str, *, now: datetime | None = None) -> UniqueAmountReservation | None:
        stmt = (
            select(UniqueAmountReservation)
            .where(
                UniqueAmountReservation.order_reference == order_reference,
                UniqueAmountReservation.expires_at > (now or self.clock()),
            )
            .order_by(UniqueAmountReservation.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def _active_values(self, now: datetime) -> set[str]:
        stmt = select(UniqueAmountReservation.value).where(UniqueAmountReservation.expires_at > now)
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    async def _purge_expired(self, now: datetime) -> int:
        stmt = delete(UniqueAmountReservation).where(UniqueAmountReservation.expires_at <= now)
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount or 0

"""Attribute payment notifications to pending payment expectations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import Integer, cast, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import ExpectationStatus, PaymentExpectation, utc_now
from ..monitoring import record_match
from .amounts import normalize_amount
from .callbacks import CallbackIntent, CallbackQueue

logger = logging.getLogger("qrislink.matcher")

MATCH_ORDER_REFERENCE = "order_reference_match"
MATCH_AMOUNT_ONLY = "amount_only_match"


@dataclass(slots=True)
class MatchResult:
    expectation: PaymentExpectation
    match_type: str
    callback_queued: bool


def build_search_text(*parts: str | None) -> str:
    return " ".join(part for part in parts if part).lower()


class PaymentMatcher:
    """Match a detected amount plus notification text to one pending expectation.

    Candidates are pending expectations created inside the match window whose
    expected amount equals the detected amount. A candidate whose order
    reference appears in the text wins; otherwise a single candidate is accepted
    on amount alone. Anything else is ambiguous and left untouched.

    Completion is a conditional update (pending -> completed), so a notification
    delivered twice completes the expectation and fires the callback once.
    """

    def __init__(
        self,
        session: AsyncSession,
        callbacks: CallbackQueue | None = None,
        *,
        window_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.callbacks = callbacks
        self.window = timedelta(seconds=window_seconds or settings.match_window_seconds)
        self.clock = clock

    async def match(
        self,
        amount_detected: str,
        *,
        title: str | None = None,
        text: str | None = None,
        big_text: str | None = None,
    ) -> MatchResult | None:
        normalized = normalize_amount(amount_detected)
        if normalized is None:
            logger.info("detected amount is not numeric", extra={"amount_detected": amount_detected})
            return None

        now = self.clock()
        criteria = self._candidate_criteria(str(amount_detected), normalized, now - self.window)
        candidates = await self._pending_candidates(criteria)
        logger.info(
            "pending expectations for amount",
            extra={"amount_detected": amount_detected, "candidates": len(candidates)},
        )
        if not candidates:
            return None

        search_text = build_search_text(title, text, big_text)
        matched: PaymentExpectation | None = None
        match_type = MATCH_ORDER_REFERENCE
        for candidate in candidates:
            if candidate.order_reference.lower() in search_text:
                matched = candidate
                break

        if matched is None:
            pending_count = await self._count_pending(criteria)
            if pending_count != 1:
                logger.info(
                    "ambiguous amount-only match, leaving expectations pending",
                    extra={"amount_detected": amount_detected, "pending": pending_count},
                )
                return None
            matched = candidates[0]
            match_type = MATCH_AMOUNT_ONLY

        return await self._complete(matched, match_type, str(amount_detected), normalized, text or "", now)

    def _candidate_criteria(self, amount_detected: str, normalized: str, since: datetime) -> tuple[Any, ...]:
        return (
            or_(
                PaymentExpectation.expected_amount == amount_detected,
                cast(PaymentExpectation.expected_amount, Integer) == int(normalized),
            ),
            PaymentExpectation.status == ExpectationStatus.PENDING,
            PaymentExpectation.created_at > since,
        )

    async def _pending_candidates(self, criteria: tuple[Any, ...]) -> list[PaymentExpectation]:
        stmt = (
            select(PaymentExpectation)
            .where(*criteria)
            .order_by(PaymentExpectation.created_at.desc(), PaymentExpectation.id.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _count_pending(self, criteria: tuple[Any, ...]) -> int:
        stmt = select(func.count()).select_from(PaymentExpectation).where(*criteria)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def _set_status(
        self,
        expectation: PaymentExpectation,
        *,
        current: ExpectationStatus,
        new: ExpectationStatus,
        completed_at: datetime | None,
    ) -> bool:
        stmt = (
            update(PaymentExpectation)
            .where(PaymentExpectation.id == expectation.id, PaymentExpectation.status == current)
            .values(status=new, completed_at=completed_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        await self.session.refresh(expectation)
        return result.rowcount == 1

    async def _complete(
        self,
        expectation: PaymentExpectation,
        match_type: str,
        amount_detected: str,
        normalized: str,
        raw_text: str,
        now: datetime,
    ) -> MatchResult | None:
        changed = await self._set_status(
            expectation,
            current=ExpectationStatus.PENDING,
            new=ExpectationStatus.COMPLETED,
            completed_at=now,
        )
        if not changed:
            logger.info(
                "expectation already completed",
                extra={"order_reference": expectation.order_reference},
            )
            return None

        # The candidate query also matches on the raw string, so the integer
        # forms are compared again before the completion is kept.
        expected_normalized = normalize_amount(expectation.expected_amount)
        if expected_normalized != normalized:
            await self._set_status(
                expectation,
                current=ExpectationStatus.COMPLETED,
                new=ExpectationStatus.PENDING,
                completed_at=None,
            )
            logger.error(
                "amount mismatch after normalization, completion reverted",
                extra={
                    "order_reference": expectation.order_reference,
                    "expected": expected_normalized,
                    "detected": normalized,
                },
            )
            return None

        logger.info(
            "payment matched",
            extra={
                "order_reference": expectation.order_reference,
                "expected_amount": expectation.expected_amount,
                "amount_detected": amount_detected,
                "match_type": match_type,
            },
        )
        record_match(match_type)

        queued = False
        if expectation.callback_url and self.callbacks is not None:
            queued = self.callbacks.notify(
                CallbackIntent(
                    target=expectation.callback_url,
                    order_reference=expectation.order_reference,
                    amount=amount_detected,
                    expected_amount=expectation.expected_amount,
                    match_type=match_type,
                    raw_text=raw_text,
                    timestamp=now.isoformat(),
                )
            )
        return MatchResult(expectation=expectation, match_type=match_type, callback_queued=queued)

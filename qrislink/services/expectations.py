"""Payment expectation registration, order QR generation and status checks."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import Integer, cast, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import ExpectationStatus, Notification, PaymentExpectation, utc_now
from ..qris_codec import ServiceFee, convert_static_to_dynamic, validate_qris
from .allocator import UniqueAmountAllocator
from .amounts import MAX_AMOUNT_DIGITS, combine_amounts, normalize_amount
from .errors import err_already_completed, err_format, err_invalid_qris, err_not_found, err_required_field

logger = logging.getLogger("qrislink.expectations")


@dataclass(slots=True)
class OrderQRResult:
    expectation: PaymentExpectation
    dynamic_qris: str


@dataclass(slots=True)
class StatusResult:
    order_reference: str
    payment_found: bool
    expectation: PaymentExpectation | None = None
    notification: Notification | None = None


def _require_amount(amount: str | int | None, field: str) -> str:
    if amount is None or amount == "":
        raise err_required_field(f"{field} is required")
    amount_str = str(amount)
    if not (amount_str.isascii() and amount_str.isdigit()):
        raise err_format(f"{field} must be a numeric string without formatting")
    if len(amount_str.lstrip("0")) > MAX_AMOUNT_DIGITS:
        raise err_format(f"{field} must have at most {MAX_AMOUNT_DIGITS} digits")
    return amount_str


class ExpectationService:
    def __init__(
        self,
        session: AsyncSession,
        allocator: UniqueAmountAllocator | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.clock = clock
        self.allocator = allocator or UniqueAmountAllocator(session, clock=clock)

    async def register(
        self,
        *,
        order_reference: str,
        amount: str | int,
        callback_url: str | None = None,
        use_unique_amount: bool = True,
    ) -> PaymentExpectation:
        """Record that ``order_reference`` expects ``amount`` (plus a unique amount)."""

        if not order_reference:
            raise err_required_field("order reference is required")
        original_amount = _require_amount(amount, "amount")
        existing = await self.find(order_reference)
        if existing and existing.status == ExpectationStatus.COMPLETED:
            logger.info(
                "expectation already completed, keeping it",
                extra={"order_reference": order_reference},
            )
            return existing
        unique_amount = await self.allocator.reserve(order_reference) if use_unique_amount else None
        return await self._store(order_reference, original_amount, unique_amount, callback_url)

    async def generate_for_order(
        self,
        *,
        static_qris: str,
        original_amount: str | int,
        order_reference: str,
        callback_url: str | None = None,
        service_fee: ServiceFee | None = None,
    ) -> OrderQRResult:
        """Reserve a unique amount, bind the combined total to the QR and expect it."""

        if not static_qris or not order_reference:
            raise err_required_field("static QRIS, original amount and order reference are required")
        original = _require_amount(original_amount, "original amount")
        if not validate_qris(static_qris):
            raise err_invalid_qris()

        existing = await self.find(order_reference)
        if existing and existing.status == ExpectationStatus.COMPLETED:
            # A fresh QR would carry an amount nothing is waiting for.
            raise err_already_completed(f"Order {order_reference} is already paid")

        unique_amount = await self.allocator.reserve(order_reference)
        dynamic_qris = convert_static_to_dynamic(static_qris, combine_amounts(original, unique_amount), service_fee)
        expectation = await self._store(order_reference, original, unique_amount, callback_url)
        return OrderQRResult(expectation=expectation, dynamic_qris=dynamic_qris)

    async def _store(
        self,
        order_reference: str,
        original_amount: str,
        unique_amount: str | None,
        callback_url: str | None,
    ) -> PaymentExpectation:
        expectation = await self.find(order_reference)
        if expectation and expectation.status == ExpectationStatus.COMPLETED:
            # Completed while the unique amount was being reserved.
            return expectation
        expected_amount = combine_amounts(original_amount, unique_amount)
        if expectation is None:
            expectation = PaymentExpectation(order_reference=order_reference)
            self.session.add(expectation)
        expectation.expected_amount = expected_amount
        expectation.unique_amount = unique_amount
        expectation.original_amount = original_amount
        expectation.callback_url = callback_url
        expectation.status = ExpectationStatus.PENDING
        expectation.created_at = self.clock()
        expectation.completed_at = None

        await self.session.commit()
        await self.session.refresh(expectation)
        logger.info(
            "payment expectation registered",
            extra={
                "order_reference": order_reference,
                "expected_amount": expected_amount,
                "unique_amount": unique_amount,
                "original_amount": original_amount,
            },
        )
        return expectation

    async def find(self, order_reference: str) -> PaymentExpectation | None:
        stmt = select(PaymentExpectation).where(PaymentExpectation.order_reference == order_reference).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get(self, order_reference: str) -> PaymentExpectation:
        expectation = await self.find(order_reference)
        if not expectation:
            raise err_not_found(f"No payment expectation for order {order_reference}")
        return expectation

    async def check_status(self, order_reference: str, timeout_minutes: int | None = None) -> StatusResult:
        """Report whether a payment arrived for an order inside the look-back window.

        Stored notifications that mention the order reference and carry the
        expected amount complete a pending expectation.
        """

        since = self.clock() - timedelta(minutes=timeout_minutes or settings.status_timeout_minutes)
        stmt = (
            select(PaymentExpectation)
            .where(
                PaymentExpectation.order_reference == order_reference,
                PaymentExpectation.created_at > since,
            )
            .limit(1)
        )
        expectation = (await self.session.execute(stmt)).scalars().first()
        if not expectation:
            return StatusResult(order_reference=order_reference, payment_found=False)
        if expectation.status == ExpectationStatus.COMPLETED:
            return StatusResult(order_reference=order_reference, payment_found=True, expectation=expectation)

        notification = await self._find_payment_notification(expectation, since)
        if notification is None:
            return StatusResult(order_reference=order_reference, payment_found=False, expectation=expectation)

        stmt = (
            update(PaymentExpectation)
            .where(PaymentExpectation.id == expectation.id, PaymentExpectation.status == ExpectationStatus.PENDING)
            .values(status=ExpectationStatus.COMPLETED, completed_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
        await self.session.commit()
        await self.session.refresh(expectation)
        logger.info(
            "payment confirmed by status check",
            extra={"order_reference": order_reference, "notification_id": notification.id},
        )
        return StatusResult(
            order_reference=order_reference,
            payment_found=True,
            expectation=expectation,
            notification=notification,
        )

    async def _find_payment_notification(self, expectation: PaymentExpectation, since: datetime) -> Notification | None:
        normalized = normalize_amount(expectation.expected_amount)
        if normalized is None:
            return None
        reference = expectation.order_reference
        stmt = (
            select(Notification)
            .where(
                or_(
                    Notification.text.contains(reference, autoescape=True),
                    Notification.title.contains(reference, autoescape=True),
                    Notification.big_text.contains(reference, autoescape=True),
                ),
                or_(
                    Notification.amount_detected == expectation.expected_amount,
                    cast(Notification.amount_detected, Integer) == int(normalized),
                ),
                Notification.created_at > since,
            )
            .order_by(Notification.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

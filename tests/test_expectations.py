"""Tests for expectation registration, order QR generation and status checks."""
from datetime import timedelta

import pytest

from sqlalchemy import func, select

from qrislink.models import ExpectationStatus, Notification, UniqueAmountReservation, utc_now
from qrislink.qris_codec import extract_amount, verify_crc
from qrislink.services.errors import ServiceError
from qrislink.services.expectations import ExpectationService


async def test_register_without_unique_amount(session):
    expectation = await ExpectationService(session).register(
        order_reference="ORDER_1", amount="50000", use_unique_amount=False
    )
    assert expectation.expected_amount == "50000"
    assert expectation.original_amount == "50000"
    assert expectation.unique_amount is None
    assert expectation.status == ExpectationStatus.PENDING


async def test_register_twice_keeps_unique_amount(session):
    service = ExpectationService(session)
    first = await service.register(order_reference="ORDER_1", amount="50000", callback_url="https://a.example")
    unique_amount = first.unique_amount
    second = await service.register(order_reference="ORDER_1", amount="50000", callback_url="https://b.example")

    assert second.id == first.id
    assert second.unique_amount == unique_amount
    assert second.callback_url == "https://b.example"


async def test_completed_expectation_is_not_reopened(session):
    service = ExpectationService(session)
    expectation = await service.register(order_reference="ORDER_1", amount="50000")
    expectation.status = ExpectationStatus.COMPLETED
    expectation.completed_at = utc_now()
    await session.commit()

    again = await service.register(order_reference="ORDER_1", amount="90000")
    assert again.status == ExpectationStatus.COMPLETED
    assert again.original_amount == "50000"


@pytest.mark.parametrize("amount, code", [("", "ERR_REQUIRED_FIELD"), ("50.000", "ERR_FORMAT")])
async def test_register_rejects_bad_amounts(session, amount, code):
    with pytest.raises(ServiceError) as exc_info:
        await ExpectationService(session).register(order_reference="ORDER_1", amount=amount)
    assert exc_info.value.code == code


async def test_generate_for_order_binds_combined_amount(session, static_qris):
    result = await ExpectationService(session).generate_for_order(
        static_qris=static_qris,
        original_amount="50000",
        order_reference="ORDER_1",
        callback_url="https://shop.example/callback",
    )

    expectation = result.expectation
    assert expectation.expected_amount == str(50000 + int(expectation.unique_amount))
    assert extract_amount(result.dynamic_qris) == expectation.expected_amount
    assert verify_crc(result.dynamic_qris)
    assert expectation.callback_url == "https://shop.example/callback"


async def test_generate_for_order_rejects_invalid_qris(session):
    with pytest.raises(ServiceError) as exc_info:
        await ExpectationService(session).generate_for_order(
            static_qris="000201", original_amount="50000", order_reference="ORDER_1"
        )
    assert exc_info.value.code == "ERR_INVALID_QRIS"


async def test_get_unknown_order_is_not_found(session):
    with pytest.raises(ServiceError) as exc_info:
        await ExpectationService(session).get("MISSING")
    assert exc_info.value.code == "ERR_NOT_FOUND"
    assert exc_info.value.status_code == 404


async def test_status_without_expectation(session):
    result = await ExpectationService(session).check_status("MISSING")
    assert result.payment_found is False
    assert result.expectation is None


async def test_status_pending_without_notification(session):
    service = ExpectationService(session)
    await service.register(order_reference="ORDER_1", amount="50000")
    result = await service.check_status("ORDER_1")
    assert result.payment_found is False
    assert result.expectation.status == ExpectationStatus.PENDING


async def test_status_completes_from_stored_notification(session):
    service = ExpectationService(session)
    expectation = await service.register(order_reference="ORDER_1", amount="50000")
    session.add(
        Notification(
            device_id="device-1",
            package_name="id.dana",
            text="Pembayaran ORDER_1 diterima",
            amount_detected=expectation.expected_amount,
        )
    )
    await session.commit()

    result = await service.check_status("ORDER_1")

    assert result.payment_found is True
    assert result.notification.text == "Pembayaran ORDER_1 diterima"
    assert result.expectation.status == ExpectationStatus.COMPLETED
    assert result.expectation.completed_at is not None


async def test_status_ignores_notification_with_other_amount(session):
    service = ExpectationService(session)
    await service.register(order_reference="ORDER_1", amount="50000", use_unique_amount=False)
    session.add(Notification(device_id="d", package_name="p", text="ORDER_1", amount_detected="49999"))
    await session.commit()

    assert (await service.check_status("ORDER_1")).payment_found is False


async def test_status_outside_timeout_is_not_found(session):
    service = ExpectationService(session, clock=lambda: utc_now() - timedelta(hours=1))
    await service.register(order_reference="ORDER_1", amount="50000", use_unique_amount=False)

    result = await ExpectationService(session).check_status("ORDER_1", timeout_minutes=15)
    assert result.expectation is None


async def _complete(session, expectation):
    expectation.status = ExpectationStatus.COMPLETED
    expectation.completed_at = utc_now()
    await session.commit()


async def _reservations_for(session, order_reference):
    stmt = select(func.count()).select_from(UniqueAmountReservation).where(
        UniqueAmountReservation.order_reference == order_reference
    )
    return (await session.execute(stmt)).scalar_one()


async def test_regenerating_completed_order_after_ttl_is_rejected(session, static_qris):
    now = [utc_now()]
    service = ExpectationService(session, clock=lambda: now[0])
    first = await service.generate_for_order(static_qris=static_qris, original_amount="50000", order_reference="ORDER_1")
    await _complete(session, first.expectation)
    expected_amount = first.expectation.expected_amount

    now[0] += timedelta(hours=2)
    with pytest.raises(ServiceError) as exc_info:
        await service.generate_for_order(static_qris=static_qris, original_amount="50000", order_reference="ORDER_1")

    assert exc_info.value.code == "ERR_ALREADY_COMPLETED"
    assert exc_info.value.status_code == 409
    assert await _reservations_for(session, "ORDER_1") == 1
    expectation = await service.get("ORDER_1")
    assert expectation.status == ExpectationStatus.COMPLETED
    assert expectation.expected_amount == expected_amount
    assert extract_amount(first.dynamic_qris) == expectation.expected_amount


async def test_registering_completed_order_draws_no_unique_amount(session):
    now = [utc_now()]
    service = ExpectationService(session, clock=lambda: now[0])
    expectation = await service.register(order_reference="ORDER_1", amount="50000")
    await _complete(session, expectation)

    now[0] += timedelta(hours=2)
    again = await service.register(order_reference="ORDER_1", amount="50000")

    assert again.status == ExpectationStatus.COMPLETED
    assert again.unique_amount == expectation.unique_amount
    assert await service.allocator.active_for_order("ORDER_1") is None


@pytest.mark.parametrize("amount", ["1" * 19, "9" * 30])
async def test_register_rejects_amounts_too_long_to_match(session, amount):
    with pytest.raises(ServiceError) as exc_info:
        await ExpectationService(session).register(order_reference="ORDER_1", amount=amount, use_unique_amount=False)
    assert exc_info.value.code == "ERR_FORMAT"


async def test_register_accepts_longest_matchable_amount(session):
    expectation = await ExpectationService(session).register(
        order_reference="ORDER_1", amount="1" * 18, use_unique_amount=False
    )
    assert expectation.expected_amount == "1" * 18

"""Tests for notification ingestion and reporting."""
import json

import pytest

from qrislink.models import ExpectationStatus
from qrislink.services.errors import ServiceError
from qrislink.services.expectations import ExpectationService
from qrislink.services.matcher import PaymentMatcher
from qrislink.services.notifications import NotificationService


async def test_ingest_stores_notification_and_device(session):
    service = NotificationService(session)
    result = await service.ingest(
        device_id="device-1",
        package_name="id.dana",
        app_name="DANA",
        title="Dana masuk",
        text="Rp50.000 diterima",
        extras={"android.subText": "QRIS"},
    )
    assert result.notification.id is not None
    assert json.loads(result.notification.extras) == {"android.subText": "QRIS"}
    assert result.match is None

    await service.ingest(device_id="device-1", package_name="id.dana")
    devices = await service.list_devices()
    assert [(d.device_id, d.total_notifications) for d in devices] == [("device-1", 2)]


async def test_ingest_requires_device_and_package(session):
    with pytest.raises(ServiceError) as exc_info:
        await NotificationService(session).ingest(device_id="", package_name="id.dana")
    assert exc_info.value.code == "ERR_REQUIRED_FIELD"


async def test_ingest_with_amount_runs_matcher(session, callback_queue):
    expectation = await ExpectationService(session).register(
        order_reference="ORDER_9", amount="120000", callback_url="https://shop.example/cb"
    )
    service = NotificationService(session, matcher=PaymentMatcher(session, callback_queue))

    result = await service.ingest(
        device_id="device-1",
        package_name="id.bca",
        text="Transfer ORDER_9",
        amount_detected=expectation.expected_amount,
    )

    assert result.match is not None
    assert result.match.expectation.status == ExpectationStatus.COMPLETED
    assert callback_queue.qsize() == 1


async def test_list_notifications_filters_and_paginates(session):
    service = NotificationService(session)
    for n in range(3):
        await service.ingest(device_id="device-1", package_name="id.dana", text=f"n{n}")
    await service.ingest(device_id="device-2", package_name="id.ovo", text="other")

    assert len(await service.list_notifications()) == 4
    device_one = await service.list_notifications(device_id="device-1")
    assert [n.text for n in device_one] == ["n2", "n1", "n0"]
    page = await service.list_notifications(device_id="device-1", limit=1, offset=1)
    assert [n.text for n in page] == ["n1"]


async def test_stats(session):
    service = NotificationService(session)
    await service.ingest(device_id="device-1", package_name="id.dana", app_name="DANA")
    await service.ingest(device_id="device-1", package_name="id.dana", app_name="DANA")
    await service.ingest(device_id="device-2", package_name="id.ovo", app_name="OVO")

    stats = await service.stats()
    assert stats["total_notifications"] == 3
    assert stats["total_devices"] == 2
    assert stats["notifications_today"] == 3
    assert stats["top_apps"][0] == {"package_name": "id.dana", "app_name": "DANA", "count": 2}

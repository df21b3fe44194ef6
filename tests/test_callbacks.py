"""Tests for callback queueing and HTTP delivery."""
import json

import httpx

from qrislink.services.callbacks import CallbackDeliveryWorker, CallbackIntent, CallbackQueue


def make_intent(target: str = "https://shop.example/callback") -> CallbackIntent:
    return CallbackIntent(
        target=target,
        order_reference="ORDER_1",
        amount="50123",
        expected_amount="50123",
        match_type="order_reference_match",
        raw_text="Payment ORDER_1",
        timestamp="2026-01-01T08:00:00+00:00",
    )


async def test_delivery_posts_payload_with_headers():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        worker = CallbackDeliveryWorker(CallbackQueue(), client=client, api_key="shop-key")
        assert await worker.deliver(make_intent()) is True

    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://shop.example/callback"
    assert request.headers["X-Source"] == "qrislink"
    assert request.headers["X-API-Key"] == "shop-key"
    body = json.loads(request.content)
    assert body["order_reference"] == "ORDER_1"
    assert body["status"] == "completed"
    assert "target" not in body


async def test_rejected_delivery_reports_failure():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    async with httpx.AsyncClient(transport=transport) as client:
        worker = CallbackDeliveryWorker(CallbackQueue(), client=client)
        assert await worker.deliver(make_intent()) is False


async def test_transport_error_reports_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        worker = CallbackDeliveryWorker(CallbackQueue(), client=client)
        assert await worker.deliver(make_intent()) is False


async def test_full_queue_drops_intent():
    queue = CallbackQueue(maxsize=1)
    assert queue.notify(make_intent()) is True
    assert queue.notify(make_intent()) is False
    assert queue.qsize() == 1

"""Payment callback intents and their delivery."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass

import httpx

from ..config import settings
from ..monitoring import record_callback

logger = logging.getLogger("qrislink.callbacks")

SOURCE_HEADER_VALUE = "qrislink"


@dataclass(slots=True)
class CallbackIntent:
    target: str
    order_reference: str
    amount: str
    expected_amount: str
    match_type: str
    raw_text: str
    timestamp: str
    status: str = "completed"

    def to_payload(self) -> dict[str, str]:
        payload = asdict(self)
        payload.pop("target")
        return payload


class CallbackQueue:
    """One-way handoff from the matcher to whoever delivers callbacks."""

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[CallbackIntent] = asyncio.Queue(maxsize=maxsize)

    def notify(self, intent: CallbackIntent) -> bool:
        try:
            self._queue.put_nowait(intent)
        except asyncio.QueueFull:
            logger.error(
                "callback queue full, intent dropped",
                extra={"order_reference": intent.order_reference, "target": intent.target},
            )
            record_callback("dropped")
            return False
        logger.info(
            "callback queued",
            extra={"order_reference": intent.order_reference, "match_type": intent.match_type},
        )
        return True

    async def get(self) -> CallbackIntent:
        return await self._queue.get()

    def get_nowait(self) -> CallbackIntent:
        return self._queue.get_nowait()

    def task_done(self) -> None:
        self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()


class CallbackDeliveryWorker:
    """POST queued intents to their targets; results are logged, not returned to the matcher."""

    def __init__(
        self,
        queue: CallbackQueue,
        *,
        client: httpx.AsyncClient | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        self.queue = queue
        self.api_key = api_key or settings.callback_api_key
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout or settings.callback_timeout_seconds)

    async def deliver(self, intent: CallbackIntent) -> bool:
        headers = {"X-Source": SOURCE_HEADER_VALUE, "X-API-Key": self.api_key}
        try:
            response = await self.client.post(intent.target, json=intent.to_payload(), headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "callback delivery failed",
                extra={"order_reference": intent.order_reference, "target": intent.target, "error": str(exc)},
            )
            record_callback("error")
            return False

        if response.is_success:
            logger.info(
                "callback delivered",
                extra={"order_reference": intent.order_reference, "status_code": response.status_code},
            )
            record_callback("delivered")
            return True

        logger.warning(
            "callback rejected",
            extra={
                "order_reference": intent.order_reference,
                "status_code": response.status_code,
                "body": response.text[:500],
            },
        )
        record_callback("rejected")
        return False

    async def run(self) -> None:
        while True:
            intent = await self.queue.get()
            try:
                await self.deliver(intent)
            finally:
                self.queue.task_done()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

"""FastAPI application for qrislink."""
from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .logging_conf import configure_logging
from .middleware import RequestLoggingMiddleware
from .models import PaymentExpectation, get_session, init_db, utc_now
from .monitoring import metrics_payload, record_service_error
from .qris_codec import convert_static_to_dynamic, extract_amount, parse_qris, payload_type, validate_qris, verify_crc
from .renderer import render_qr_payload
from .schemas import (
    ConvertRequest,
    ConvertResponse,
    DeviceRecord,
    ExpectationResponse,
    NotificationRecord,
    NotificationRequest,
    NotificationResponse,
    OrderQRRequest,
    OrderQRResponse,
    ParseResponse,
    PaymentStatusResponse,
    QRISRequest,
    RegisterExpectationRequest,
    StatsResponse,
    ValidateResponse,
)
from .services.allocator import UniqueAmountAllocator
from .services.amounts import combine_amounts
from .services.callbacks import CallbackDeliveryWorker, CallbackQueue
from .services.errors import ServiceError, err_format, err_invalid_qris, err_required_field
from .services.expectations import ExpectationService
from .services.matcher import PaymentMatcher
from .services.notifications import NotificationService

app = FastAPI(title="qrislink", version="0.1.0")
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key"],
)

logger = logging.getLogger("qrislink.api")

callback_queue = CallbackQueue()


def get_callback_queue() -> CallbackQueue:
    return callback_queue


def _warn_insecure_defaults() -> None:
    if settings.api_key == "dev-secret-key":
        logger.warning(
            "api key menggunakan nilai default",
            extra={"config_key": "api_key"},
        )
    if settings.callback_api_key == "dev-secret-key":
        logger.warning(
            "callback api key menggunakan nilai default",
            extra={"config_key": "callback_api_key"},
        )


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging()
    _warn_insecure_defaults()
    await init_db()
    worker = CallbackDeliveryWorker(callback_queue)
    app.state.callback_worker = worker
    app.state.callback_task = asyncio.create_task(worker.run())


@app.on_event("shutdown")
async def on_shutdown() -> None:
    task = getattr(app.state, "callback_task", None)
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    worker = getattr(app.state, "callback_worker", None)
    if worker is not None:
        await worker.aclose()


async def require_api_key(x_api_key: str = Header(...)) -> None:
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    route = request.scope.get("route")
    route_path = route.path if route else request.url.path
    logger.warning(
        "service error",
        extra={"code": exc.code, "error": exc.message, "path": route_path, "method": request.method},
    )
    record_service_error(exc.code, route_path)
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "message": exc.message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    route = request.scope.get("route")
    route_path = route.path if route else request.url.path
    logger.exception(
        "unhandled exception",
        extra={"path": route_path, "method": request.method},
    )
    return JSONResponse(status_code=500, content={"code": "ERR_INTERNAL", "message": "Internal server error"})


def _expectation_response(expectation: PaymentExpectation) -> ExpectationResponse:
    return ExpectationResponse(
        order_reference=expectation.order_reference,
        expected_amount=expectation.expected_amount,
        unique_amount=expectation.unique_amount,
        original_amount=expectation.original_amount,
        status=expectation.status.value,
        created_at=expectation.created_at,
        completed_at=expectation.completed_at,
    )


@app.get("/health", tags=["system"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics", tags=["system"])
async def metrics() -> Response:
    payload, content_type = metrics_payload()
    return Response(content=payload, media_type=content_type)


@app.post("/v1/qris/convert", response_model=ConvertResponse, tags=["qris"], dependencies=[Depends(require_api_key)])
async def convert_qris(payload: ConvertRequest, session: AsyncSession = Depends(get_session)) -> ConvertResponse:
    if not payload.static_qris or payload.amount in (None, ""):
        raise err_required_field("Missing required fields: static_qris, amount")
    if not validate_qris(payload.static_qris):
        raise err_invalid_qris("Invalid QRIS format - failed validation")

    amount = str(payload.amount)
    if not (amount.isascii() and amount.isdigit()):
        raise err_format("QRIS conversion failed: amount must be a numeric string without formatting")
    fee = payload.service_fee.to_fee() if payload.service_fee else None
    unique_amount = None
    if payload.order_reference:
        unique_amount = await UniqueAmountAllocator(session).reserve(payload.order_reference)
        amount = combine_amounts(amount, unique_amount)

    dynamic_qris = convert_static_to_dynamic(payload.static_qris, amount, fee)
    logger.info(
        "qris converted",
        extra={"amount": amount, "unique_amount": unique_amount, "order_reference": payload.order_reference},
    )

    qr_png_base64 = None
    if payload.render:
        qr_png_base64 = render_qr_payload(dynamic_qris, title=settings.app_name, caption=f"IDR {amount}")["png_base64"]

    return ConvertResponse(
        static_qris=payload.static_qris,
        dynamic_qris=dynamic_qris,
        amount=amount,
        original_amount=str(payload.amount) if unique_amount else None,
        unique_amount=unique_amount,
        order_reference=payload.order_reference,
        qr_png_base64=qr_png_base64,
        timestamp=utc_now(),
    )


@app.post("/v1/qris/validate", response_model=ValidateResponse, tags=["qris"], dependencies=[Depends(require_api_key)])
async def validate(payload: QRISRequest) -> ValidateResponse:
    if not payload.qris:
        raise err_required_field("Missing QRIS code")
    return ValidateResponse(
        valid=validate_qris(payload.qris),
        type=payload_type(payload.qris),
        amount=extract_amount(payload.qris),
        crc_valid=verify_crc(payload.qris),
    )


@app.post("/v1/qris/parse", response_model=ParseResponse, tags=["qris"], dependencies=[Depends(require_api_key)])
async def parse(payload: QRISRequest) -> ParseResponse:
    return ParseResponse(**parse_qris(payload.qris))


@app.post("/v1/orders", response_model=OrderQRResponse, tags=["orders"], dependencies=[Depends(require_api_key)])
async def generate_for_order(payload: OrderQRRequest, session: AsyncSession = Depends(get_session)) -> OrderQRResponse:
    service = ExpectationService(session)
    result = await service.generate_for_order(
        static_qris=payload.static_qris,
        original_amount=payload.original_amount,
        order_reference=payload.order_reference,
        callback_url=payload.callback_url,
        service_fee=payload.service_fee.to_fee() if payload.service_fee else None,
    )
    expectation = result.expectation
    return OrderQRResponse(
        order_reference=expectation.order_reference,
        dynamic_qris=result.dynamic_qris,
        expected_amount=expectation.expected_amount,
        unique_amount=expectation.unique_amount,
        original_amount=expectation.original_amount,
        status=expectation.status.value,
        created_at=expectation.created_at,
    )


@app.get(
    "/v1/orders/{order_reference}/unique-amount",
    response_model=ExpectationResponse,
    tags=["orders"],
    dependencies=[Depends(require_api_key)],
)
async def get_unique_amount(order_reference: str, session: AsyncSession = Depends(get_session)) -> ExpectationResponse:
    expectation = await ExpectationService(session).get(order_reference)
    return _expectation_response(expectation)


@app.post("/v1/expectations", response_model=ExpectationResponse, tags=["expectations"], dependencies=[Depends(require_api_key)])
async def register_expectation(
    payload: RegisterExpectationRequest,
    session: AsyncSession = Depends(get_session),
) -> ExpectationResponse:
    expectation = await ExpectationService(session).register(
        order_reference=payload.order_reference,
        amount=payload.expected_amount,
        callback_url=payload.callback_url,
        use_unique_amount=payload.use_unique_amount,
    )
    return _expectation_response(expectation)


@app.get(
    "/v1/expectations/{order_reference}/status",
    response_model=PaymentStatusResponse,
    tags=["expectations"],
    dependencies=[Depends(require_api_key)],
)
async def payment_status(
    order_reference: str,
    timeout: int | None = Query(default=None, ge=1, le=1440),
    session: AsyncSession = Depends(get_session),
) -> PaymentStatusResponse:
    result = await ExpectationService(session).check_status(order_reference, timeout_minutes=timeout)
    expectation = result.expectation
    if expectation is None:
        return PaymentStatusResponse(order_reference=order_reference, payment_found=False)
    notification = result.notification
    return PaymentStatusResponse(
        order_reference=order_reference,
        payment_found=result.payment_found,
        status=expectation.status.value,
        expected_amount=expectation.expected_amount,
        amount=notification.amount_detected if notification else None,
        completed_at=expectation.completed_at,
        notification_text=notification.text if notification else None,
    )


@app.post("/v1/notifications", response_model=NotificationResponse, tags=["notifications"], dependencies=[Depends(require_api_key)])
async def receive_notification(
    payload: NotificationRequest,
    session: AsyncSession = Depends(get_session),
    callbacks: CallbackQueue = Depends(get_callback_queue),
) -> NotificationResponse:
    service = NotificationService(session, matcher=PaymentMatcher(session, callbacks))
    result = await service.ingest(**payload.model_dump())
    match = result.match
    return NotificationResponse(
        id=result.notification.id,
        matched=match is not None,
        order_reference=match.expectation.order_reference if match else None,
        match_type=match.match_type if match else None,
        timestamp=result.notification.created_at,
    )


@app.get("/v1/notifications", response_model=list[NotificationRecord], tags=["notifications"], dependencies=[Depends(require_api_key)])
async def list_notifications(
    device_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> list[NotificationRecord]:
    rows = await NotificationService(session).list_notifications(device_id=device_id, limit=limit, offset=offset)
    return [NotificationRecord.model_validate(row) for row in rows]


@app.get("/v1/devices", response_model=list[DeviceRecord], tags=["notifications"], dependencies=[Depends(require_api_key)])
async def list_devices(session: AsyncSession = Depends(get_session)) -> list[DeviceRecord]:
    rows = await NotificationService(session).list_devices()
    return [DeviceRecord.model_validate(row) for row in rows]


@app.get("/v1/stats", response_model=StatsResponse, tags=["notifications"], dependencies=[Depends(require_api_key)])
async def stats(session: AsyncSession = Depends(get_session)) -> StatsResponse:
    return StatsResponse(**await NotificationService(session).stats())

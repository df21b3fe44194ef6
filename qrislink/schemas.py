"""Pydantic schemas for API contracts."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .qris_codec import ServiceFee


class ServiceFeeType(str, Enum):
    FIXED = "fixed"
    PERCENT = "percent"


class ServiceFeeSchema(BaseModel):
    type: ServiceFeeType
    value: str

    @field_validator("type", mode="before")
    @classmethod
    def _legacy_type(cls, value: Any) -> Any:
        # Older integrations send the fixed fee as "rupiah".
        return "fixed" if value == "rupiah" else value

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value

    def to_fee(self) -> ServiceFee:
        return ServiceFee(type=self.type.value, value=self.value)


class ConvertRequest(BaseModel):
    static_qris: str = Field(description="Static QRIS payload string")
    amount: str | int
    service_fee: ServiceFeeSchema | None = None
    order_reference: str | None = Field(default=None, max_length=128)
    render: bool = False


class ConvertResponse(BaseModel):
    static_qris: str
    dynamic_qris: str
    amount: str
    original_amount: str | None = None
    unique_amount: str | None = None
    order_reference: str | None = None
    qr_png_base64: str | None = None
    timestamp: datetime


class QRISRequest(BaseModel):
    qris: str


class ValidateResponse(BaseModel):
    valid: bool
    type: Literal["static", "dynamic"]
    amount: str | None
    crc_valid: bool


class MerchantInfo(BaseModel):
    category_code: str | None = None
    currency: str | None = None
    country_code: str | None = None
    name: str | None = None
    city: str | None = None
    postal_code: str | None = None


class ParseResponse(BaseModel):
    type: Literal["static", "dynamic"]
    payload_format: str
    amount: str | None
    crc_valid: bool
    merchant: MerchantInfo


class OrderQRRequest(BaseModel):
    static_qris: str
    original_amount: str | int
    order_reference: str = Field(min_length=1, max_length=128)
    callback_url: str | None = None
    service_fee: ServiceFeeSchema | None = None


class OrderQRResponse(BaseModel):
    order_reference: str
    dynamic_qris: str
    expected_amount: str
    unique_amount: str | None
    original_amount: str | None
    status: str
    created_at: datetime


class RegisterExpectationRequest(BaseModel):
    order_reference: str = Field(min_length=1, max_length=128)
    expected_amount: str | int
    callback_url: str | None = None
    use_unique_amount: bool = True


class ExpectationResponse(BaseModel):
    order_reference: str
    expected_amount: str
    unique_amount: str | None
    original_amount: str | None
    status: str
    created_at: datetime
    completed_at: datetime | None = None


class PaymentStatusResponse(BaseModel):
    order_reference: str
    payment_found: bool
    status: str | None = None
    expected_amount: str | None = None
    amount: str | None = None
    completed_at: datetime | None = None
    notification_text: str | None = None


class NotificationRequest(BaseModel):
    device_id: str = Field(min_length=1, max_length=128)
    package_name: str = Field(min_length=1, max_length=255)
    app_name: str | None = None
    posted_at: str | None = None
    title: str | None = None
    text: str | None = None
    sub_text: str | None = None
    big_text: str | None = None
    channel_id: str | None = None
    notification_id: int | None = None
    amount_detected: str | None = None
    extras: dict[str, Any] | None = None

    @field_validator("amount_detected", mode="before")
    @classmethod
    def _stringify_amount(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class NotificationResponse(BaseModel):
    id: int
    matched: bool
    order_reference: str | None = None
    match_type: str | None = None
    timestamp: datetime


class NotificationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: str
    package_name: str
    app_name: str | None
    title: str | None
    text: str | None
    big_text: str | None
    amount_detected: str | None
    created_at: datetime


class DeviceRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    device_id: str
    last_seen: datetime
    total_notifications: int


class AppCount(BaseModel):
    package_name: str
    app_name: str | None
    count: int


class StatsResponse(BaseModel):
    total_notifications: int
    total_devices: int
    notifications_today: int
    top_apps: list[AppCount]

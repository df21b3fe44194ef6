"""QRIS payload codec: validation, amount extraction and static to dynamic conversion."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .crc import crc16_ccitt
from .services.errors import err_format, err_invalid_qris, err_required_field, err_structure
from .tlv import TLVItem, build_tlv, find_tag, parse_tlv

FORMAT_INDICATOR = "000201"
POI_STATIC = "010211"
POI_DYNAMIC = "010212"
MERCHANT_SENTINEL = "5802ID"
CRC_PREFIX = "6304"
CRC_LENGTH = 4

TAG_POI = "01"
TAG_AMOUNT = "54"
FEE_FIXED_PREFIX = "55020256"
FEE_PERCENT_PREFIX = "55020357"

# TLV length fields are two decimal digits.
MAX_VALUE_LENGTH = 99

MIN_PAYLOAD_LENGTH = 50
MAX_PAYLOAD_LENGTH = 500

MERCHANT_TAGS = {
    "52": "category_code",
    "53": "currency",
    "58": "country_code",
    "59": "name",
    "60": "city",
    "61": "postal_code",
}

FEE_TYPES = ("fixed", "percent")

logger = logging.getLogger("qrislink.codec")


def _is_digits(value: str) -> bool:
    return value.isascii() and value.isdigit()


@dataclass(frozen=True)
class ServiceFee:
    type: str
    value: str

    def __post_init__(self) -> None:
        if self.type not in FEE_TYPES:
            raise err_format(f"QRIS conversion failed: unsupported service fee type {self.type!r}")
        if not self.value:
            raise err_required_field("QRIS conversion failed: service fee value is required")
        if len(self.value) > MAX_VALUE_LENGTH:
            raise err_format("QRIS conversion failed: service fee value is too long")

    def serialize(self) -> str:
        prefix = FEE_FIXED_PREFIX if self.type == "fixed" else FEE_PERCENT_PREFIX
        return f"{prefix}{len(self.value):02d}{self.value}"


def append_crc(payload_no_crc: str) -> str:
    """Append the Tag 63 prefix and its CRC16 computed over everything before it."""

    crc = crc16_ccitt(f"{payload_no_crc}{CRC_PREFIX}")
    return f"{payload_no_crc}{CRC_PREFIX}{crc}"


def verify_crc(payload: str) -> bool:
    if len(payload) <= CRC_LENGTH:
        return False
    return crc16_ccitt(payload[:-CRC_LENGTH]) == payload[-CRC_LENGTH:].upper()


def parse_fields(payload: str) -> list[TLVItem]:
    """Parse fields following the format indicator, leaving the CRC value unread."""

    return parse_tlv(payload, start=len(FORMAT_INDICATOR), reserved=CRC_LENGTH)


def validate_qris(payload: str | None) -> bool:
    if not payload:
        return False
    if not MIN_PAYLOAD_LENGTH <= len(payload) <= MAX_PAYLOAD_LENGTH:
        return False
    if not payload.startswith(FORMAT_INDICATOR):
        return False
    # A duplicated sentinel cannot be converted, so it is rejected here as well.
    return payload.count(MERCHANT_SENTINEL) == 1


def extract_amount(payload: str) -> str | None:
    """Return the Tag 54 value, or None for amount-less payloads."""

    item = find_tag(parse_fields(payload), TAG_AMOUNT)
    return item.value if item else None


def payload_type(payload: str) -> str:
    item = find_tag(parse_fields(payload), TAG_POI)
    if item and item.value == POI_DYNAMIC[-2:]:
        return "dynamic"
    return "static"


def parse_qris(payload: str) -> dict[str, Any]:
    """Parse a payload into its type, amount and merchant information."""

    if not validate_qris(payload):
        raise err_invalid_qris()

    fields = parse_fields(payload)
    merchant: dict[str, str] = {}
    for item in fields:
        key = MERCHANT_TAGS.get(item.tag)
        if key:
            merchant[key] = item.value

    amount = find_tag(fields, TAG_AMOUNT)
    return {
        "type": payload_type(payload),
        "payload_format": payload[4:6],
        "amount": amount.value if amount else None,
        "crc_valid": verify_crc(payload),
        "merchant": merchant,
    }


def convert_static_to_dynamic(static_qris: str, amount: str | int, service_fee: ServiceFee | None = None) -> str:
    """Bind ``amount`` (and an optional service fee) to a static payload.

    The CRC trailer of the source is discarded and recomputed over the rebuilt
    payload.
    """

    if not static_qris or amount is None or amount == "":
        raise err_required_field("QRIS conversion failed: static QRIS and amount are required")

    amount_str = str(amount)
    if not _is_digits(amount_str):
        raise err_format("QRIS conversion failed: amount must be a numeric string without formatting")
    if len(amount_str) > MAX_VALUE_LENGTH:
        raise err_format("QRIS conversion failed: amount is too long")

    body = static_qris[:-CRC_LENGTH]
    if body.endswith(CRC_PREFIX):
        body = body[: -len(CRC_PREFIX)]

    if POI_STATIC in body:
        body = body.replace(POI_STATIC, POI_DYNAMIC, 1)
    else:
        logger.warning("point of initiation marker not found", extra={"marker": POI_STATIC})

    parts = body.split(MERCHANT_SENTINEL)
    if len(parts) != 2:
        raise err_structure(
            f"QRIS conversion failed: missing or duplicated merchant location "
            f"({len(parts) - 1} occurrences of {MERCHANT_SENTINEL})"
        )

    amount_block = TLVItem(tag=TAG_AMOUNT, value=amount_str).serialize()
    if service_fee:
        amount_block += service_fee.serialize()
    amount_block += MERCHANT_SENTINEL

    return append_crc(parts[0] + amount_block + parts[1])


def generate_sample_qris(merchant_name: str = "Test Merchant", city: str = "Jakarta", amount: str | None = None) -> str:
    """Build a well-formed QRIS payload, static unless ``amount`` is given."""

    merchant_account = build_tlv(
        [
            TLVItem(tag="00", value="ID.CO.QRIS.WWW"),
            TLVItem(tag="01", value="936000140000012345"),
            TLVItem(tag="02", value="ID1020001234567"),
            TLVItem(tag="03", value="UMI"),
        ]
    )
    merchant_info = build_tlv(
        [
            TLVItem(tag="00", value="ID.CO.QRIS.WWW"),
            TLVItem(tag="02", value="ID1020001234567"),
            TLVItem(tag="03", value="UMI"),
        ]
    )
    items = [
        TLVItem(tag="00", value="01"),
        TLVItem(tag=TAG_POI, value="12" if amount else "11"),
        TLVItem(tag="26", value=merchant_account),
        TLVItem(tag="51", value=merchant_info),
        TLVItem(tag="52", value="4812"),
        TLVItem(tag="53", value="360"),
    ]
    if amount:
        items.append(TLVItem(tag=TAG_AMOUNT, value=str(amount)))
    items.extend(
        [
            TLVItem(tag="58", value="ID"),
            TLVItem(tag="59", value=merchant_name),
            TLVItem(tag="60", value=city),
        ]
    )
    return append_crc(build_tlv(items))

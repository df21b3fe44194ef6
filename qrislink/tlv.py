"""Utility helpers to build and parse EMV-style TLV payloads."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class TLVItem:
    tag: str
    value: str

    def serialize(self) -> str:
        length = f"{len(self.value):02d}"
        return f"{self.tag}{length}{self.value}"


def build_tlv(items: Iterable[TLVItem]) -> str:
    """Serialize iterable of TLV items into EMV string."""

    return "".join(item.serialize() for item in items)


def parse_tlv(payload: str, start: int = 0, reserved: int = 0) -> list[TLVItem]:
    """Parse TLV payload string into TLV items.

    Parsing begins at ``start`` and stops once no more than ``reserved`` trailing
    characters remain, or at the first malformed length (non-numeric, or longer
    than what is left). Malformed input yields the fields read so far.
    """

    items: list[TLVItem] = []
    idx = start
    limit = len(payload) - reserved
    while idx < limit and idx + 4 <= len(payload):
        tag = payload[idx : idx + 2]
        raw_length = payload[idx + 2 : idx + 4]
        if not (raw_length.isascii() and raw_length.isdigit()):
            break
        value_start = idx + 4
        value_end = value_start + int(raw_length)
        if value_end > len(payload):
            break
        items.append(TLVItem(tag=tag, value=payload[value_start:value_end]))
        idx = value_end
    return items


def find_tag(items: Iterable[TLVItem], tag: str) -> TLVItem | None:
    for item in items:
        if item.tag == tag:
            return item
    return None

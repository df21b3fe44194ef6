"""Shared service error definitions."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ServiceError(Exception):
    code: str
    message: str
    status_code: int = 400

    def __str__(self) -> str:  # noqa: D401 override
        return f"{self.code}: {self.message}"


def err_format(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_FORMAT", message=message or "Malformed value", status_code=400)


def err_structure(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_STRUCTURE", message=message or "Malformed QRIS structure", status_code=422)


def err_required_field(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_REQUIRED_FIELD", message=message or "Required field missing", status_code=400)


def err_invalid_qris(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_INVALID_QRIS", message=message or "Invalid QRIS format", status_code=400)


def err_pool_exhausted(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_POOL_EXHAUSTED", message=message or "No unique amounts available", status_code=503)


def err_not_found(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_NOT_FOUND", message=message or "Resource not found", status_code=404)


def err_already_completed(message: str | None = None) -> ServiceError:
    return ServiceError(code="ERR_ALREADY_COMPLETED", message=message or "Order is already paid", status_code=409)

"""
Expected, user-facing failures of the booking core.

Each error is a FastAPI ``HTTPException`` so the service layer can raise it
and the HTTP layer renders it without per-route handling. The response
detail is a dict::

    {"error": "session_full", "message": "...", "doctor_id": "...", ...}
"""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException


def _jsonable(v: Any) -> Any:
    if isinstance(v, (date, datetime)):
        return v.isoformat()
    if isinstance(v, Enum):
        return v.value
    return v


class ClinicError(HTTPException):
    code = "clinic_error"
    http_status = 400

    def __init__(self, message: str, headers: Optional[dict[str, str]] = None, **context: Any):
        self.message = message
        self.context = {k: _jsonable(v) for k, v in context.items() if v is not None}
        detail = {"error": self.code, "message": message, **self.context}
        super().__init__(status_code=self.http_status, detail=detail, headers=headers)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NoScheduleConfigured(ClinicError):
    code = "no_schedule_configured"
    http_status = 404


class DoctorAbsent(ClinicError):
    code = "doctor_absent"
    http_status = 409


class SessionFull(ClinicError):
    code = "session_full"
    http_status = 409


class InvalidTransition(ClinicError):
    code = "invalid_transition"
    http_status = 409


class BookingNotFound(ClinicError):
    code = "booking_not_found"
    http_status = 404


class BookingClosed(ClinicError):
    code = "booking_closed"
    http_status = 409


class InvalidFeeInput(ClinicError):
    code = "invalid_fee_input"
    http_status = 400


class ConcurrentAllocationConflict(ClinicError):
    """Retryable: the slot write kept colliding with concurrent writers."""

    code = "concurrent_allocation_conflict"
    http_status = 409

    def __init__(self, message: str, **context: Any):
        super().__init__(message, headers={"Retry-After": "1"}, **context)

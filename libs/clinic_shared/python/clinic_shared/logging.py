from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone

from .request_id import get_request_id

# Extra attributes copied from a LogRecord into the JSON line when present.
CONTEXT_FIELDS = (
    "doctor_id",
    "dispensary_id",
    "booking_date",
    "booking_id",
    "appointment_number",
    "attempt",
    "status",
    "recipient",
    "template",
)


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str | None = None):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        msg = record.msg
        data = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg if isinstance(msg, dict) else record.getMessage(),
            "request_id": get_request_id() or None,
        }
        if self.service:
            data["service"] = self.service
        for field in CONTEXT_FIELDS:
            val = getattr(record, field, None)
            if val is not None:
                data[field] = val
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_json_logging(level: str | None = None, service: str | None = None):
    lvl = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service=service))
    root.addHandler(handler)
    root.setLevel(lvl)

from .request_id import RequestIDMiddleware, get_request_id
from .http import configure_cors, add_standard_health
from .logging import setup_json_logging, JsonFormatter

__all__ = [
    "RequestIDMiddleware",
    "get_request_id",
    "configure_cors",
    "add_standard_health",
    "setup_json_logging",
    "JsonFormatter",
]

"""
School Personnel - Log Output

One JSON object per line on stdout. Every line carries the request id and
the operator taken from X-Operator, so a link or password reset can be traced
from the HTTP request to the store calls it made.

Audit events (personnel.audit) are lifted into an "audit" block; any other
extra fields passed to a log call land under "extra".
"""

import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional


SERVICE_NAME = "school-personnel"

AUDIT_FIELDS = ("event", "performed_by", "details", "success", "timestamp")

# Chatty third-party loggers; store traffic is already logged by the clients
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")

_LOG_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "request_id", "operator",
}


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "request_id": getattr(record, "request_id", None),
            "operator": getattr(record, "operator", None),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        extra = {k: v for k, v in vars(record).items() if k not in _LOG_RECORD_ATTRS}
        if "event" in extra and "performed_by" in extra:
            entry["audit"] = {k: extra.pop(k) for k in AUDIT_FIELDS if k in extra}
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["error"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "stack": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(entry, default=str)


class RequestContextFilter(logging.Filter):
    """Stamps request_id and operator onto every record passing the handler."""

    def __init__(self):
        super().__init__()
        self.request_id: Optional[str] = None
        self.operator: Optional[str] = None

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = self.request_id
        record.operator = self.operator
        return True


_context = RequestContextFilter()


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = SERVICE_NAME
) -> logging.Logger:
    """
    Route all logging to stdout through the request-context filter.

    Args:
        level: Root log level name
        json_format: JSON lines when True, plain text for local runs
        service_name: Value of the "service" field

    Returns:
        The root logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(request_id)s %(operator)s] %(message)s"
        ))
    handler.addFilter(_context)
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def set_request_context(request_id: Optional[str] = None, operator: Optional[str] = None):
    _context.request_id = request_id
    _context.operator = operator


def clear_request_context():
    set_request_context(None, None)

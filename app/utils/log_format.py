"""Structured logging setup.

JSON lines in deployed environments, plain text for local work. Fields passed
through `extra=` that appear in STRUCTURED_FIELDS are copied onto the record.
"""

import json
import logging
from datetime import datetime, timezone

STRUCTURED_FIELDS = (
    "event",
    "tenant_scope",
    "phone",
    "batch_id",
    "source",
    "error_code",
    "deleted",
    "count",
)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in STRUCTURED_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure the root logger once on startup."""
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s - %(message)s",
        ))
    handler.set_name("dnc")
    root = logging.getLogger()
    # Re-running (app factory in tests) must not stack handlers
    for existing in [h for h in root.handlers if h.get_name() == "dnc"]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

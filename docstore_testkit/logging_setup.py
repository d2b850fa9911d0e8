"""Single-line JSON logging for test runs.

CI log collectors parse one JSON object per line far more reliably than
free text, so a test session can call configure_logging() once (the
pytest plugin does this when --docstore-json-logs is given).
"""

from __future__ import annotations

import json
import logging


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize the log record to a JSON string."""
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: int = logging.INFO) -> logging.Logger:
    """Install the JSON handler on the root logger, once.

    Calling this again only updates the level; it never stacks a second
    handler.
    """
    root = logging.getLogger()
    root.setLevel(level)
    if not any(
        isinstance(h.formatter, JSONFormatter) for h in root.handlers
    ):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root.addHandler(handler)
    return root

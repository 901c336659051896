from __future__ import annotations

import logging
import os
import sys

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

_SECRET_KEY_MARKERS = ("token", "secret", "password", "authorization")


class EventFormatter(logging.Formatter):
    """``<time> <level> <logger> <event> key=value ...``

    Event fields passed via ``extra=`` are appended in sorted order. Keys that
    look like credentials are printed as ``[redacted]``.
    """

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = []
        for key in sorted(set(vars(record)) - _RECORD_ATTRS):
            value = getattr(record, key)
            if any(marker in key.lower() for marker in _SECRET_KEY_MARKERS):
                value = "[redacted]"
            fields.append(f"{key}={value}")
        if not fields:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} {' '.join(fields)}{sep}{tail}"


def configure_logging() -> None:
    """Send connection-service events to stdout once per process.

    ``LOG_LEVEL`` picks the root level (default INFO). A process that already
    installed handlers keeps them.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        EventFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    root.addHandler(handler)
    level_name = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

from __future__ import annotations

import logging
import os
import sys
from pythonjsonlogger import jsonlogger


_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _formatter(kind: str) -> logging.Formatter:
    if kind == "json":
        # event name lands in "event"; structured context comes from `extra`
        return jsonlogger.JsonFormatter(
            _FIELDS,
            rename_fields={"message": "event", "levelname": "level", "asctime": "ts"},
        )
    return logging.Formatter(fmt=_FIELDS)


def setup_logging(level: str = "INFO") -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(lvl)

    kind = (os.getenv("FLOODGATE_LOG_FORMAT") or os.getenv("LOG_FORMAT") or "json").lower()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_formatter(kind))
    root.handlers = [handler]

    # per-request httpx lines drown out scan events at INFO
    logging.getLogger("httpx").setLevel(max(lvl, logging.WARNING))

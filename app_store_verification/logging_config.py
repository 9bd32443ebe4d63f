# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Logging setup for applications embedding the verifier.

The library itself only emits records on named ``asv.*`` loggers and
never configures handlers on import.  Embedding applications call
:func:`configure_logging` once at startup to get either structured JSON
lines (the default) or plain text.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Optional

from app_store_verification.config import LOG_FORMAT, LOG_LEVEL

__all__ = ["JSONFormatter", "configure_logging"]

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Produces one JSON object per log line with fields:

    * ``timestamp`` — ISO 8601 UTC timestamp.
    * ``level`` — Log level name (INFO, WARNING, ERROR, etc.).
    * ``logger`` — Logger name.
    * ``message`` — The formatted log message.
    * ``module`` — Source module name.
    * ``funcName`` — Source function name.

    If the log record carries an exception, it is serialized as an
    ``exception`` field containing the formatted traceback string.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
) -> None:
    """Configure the root logger for the embedding application.

    Parameters:
        level: Log level name; defaults to ``LOG_LEVEL``.
        fmt:   ``"json"`` or ``"text"``; defaults to ``LOG_FORMAT``.

    All existing root handlers are removed first to prevent duplicate
    output when a framework has already installed its own.
    """
    level = level or LOG_LEVEL
    fmt = fmt or LOG_FORMAT

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if fmt.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # OCSP traffic goes through httpx; keep its request lines quiet.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

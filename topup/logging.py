"""
Logging setup for the top-up backend.

The root logger is configured once on import; modules call
`get_logger(__name__)`. Player ids, payment references and other
client-supplied values go through the `sanitize_*` helpers before they are
logged.
"""

import logging
import os
import sys
from functools import cache

_DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
# Vercel adds its own timestamps
_PLATFORM_FORMAT = "%(levelname)s - %(name)s - %(message)s"

# Client libraries that log every request at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "aiogram.event")

# CR/LF/TAB would let a crafted value forge extra log lines
_LOG_ESCAPES = str.maketrans({"\n": "\\n", "\r": "\\r", "\t": "\\t", "\x00": None})


def _level_from_env() -> int:
    name = os.environ.get("LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def _configure_root_logger() -> None:
    root = logging.getLogger()
    if root.handlers:
        # Host (pytest, uvicorn) already configured logging
        return

    level = _level_from_env()
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    on_vercel = os.environ.get("VERCEL") == "1"
    handler.setFormatter(logging.Formatter(_PLATFORM_FORMAT if on_vercel else _DETAILED_FORMAT))

    root.setLevel(level)
    root.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


_configure_root_logger()


@cache
def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def sanitize_id_for_logging(id_value: str | None, max_length: int = 20) -> str:
    """
    Make an order id or reference safe to log.

    Order ids carry the `ROBEKC-` prefix, so 20 characters are kept rather
    than a short hash-like stub.
    """
    if not id_value:
        return "N/A"
    return str(id_value).translate(_LOG_ESCAPES)[:max_length]


def sanitize_string_for_logging(value: str | None, max_length: int = 50) -> str:
    """Escape and truncate free text (player ids, signatures), marking cuts with '...'."""
    if not value:
        return "N/A"
    safe_value = str(value).translate(_LOG_ESCAPES)
    if len(safe_value) <= max_length:
        return safe_value
    return safe_value[:max_length] + "..."


__all__ = ["get_logger", "sanitize_id_for_logging", "sanitize_string_for_logging"]

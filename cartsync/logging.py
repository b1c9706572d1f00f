"""
Logging setup for cartsync.

The root logger is configured once, on first import, from LOG_LEVEL.
Session tokens and user IDs must go through sanitize_id_for_logging:
a session token is the only credential of an anonymous cart.
"""

import logging
import os
import sys
from functools import cache

_DETAILED = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_COMPACT = "%(levelname)s - %(name)s - %(message)s"

# Newlines and tabs could forge extra log records (CWE-117)
_CONTROL_CHARS = str.maketrans({"\n": "\\n", "\r": "\\r", "\t": "\\t", "\x00": None})

_ID_PREFIX = 8


def configure_logging() -> None:
    """Attach a stdout handler to the root logger unless the host already did."""
    root = logging.getLogger()
    if root.handlers:
        return

    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    # Vercel already timestamps every line
    handler.setFormatter(logging.Formatter(_COMPACT if os.environ.get("VERCEL") == "1" else _DETAILED))
    root.setLevel(level)
    root.addHandler(handler)

    # One PostgREST request per cart line write
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


configure_logging()


@cache
def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def sanitize_id_for_logging(id_value: str | None) -> str:
    """Escaped first 8 characters of a token or ID, "N/A" when empty."""
    if not id_value:
        return "N/A"
    return str(id_value).translate(_CONTROL_CHARS)[:_ID_PREFIX]

"""Category-gated application logging.

Categories are coarse (jobs, ffmpeg, probe, preconvert, intro, range, subs).
``LOG_ALL=0`` disables every category unless explicitly enabled,
``LOG_<CAT>=1|0`` overrides per category. Default: everything on.
"""
from __future__ import annotations

import logging
import os

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_logger = logging.getLogger("media")


def configure_logging(level: str | None = None) -> None:
    """Configure process-wide logging once at startup."""
    lvl = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, lvl, logging.INFO),
        format=DEFAULT_LOG_FORMAT,
    )


def log_enabled(cat: str) -> bool:
    base = os.environ.get("LOG_ALL", "1")
    base_on = str(base).lower() not in ("0", "false", "no")
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in ("1", "true", "yes")
    return base_on


def log(cat: str, msg: str, level: int = logging.INFO) -> None:
    """Emit an application log line for a given category."""
    if not log_enabled(cat):
        return
    _logger.getChild(cat).log(level, "%s", msg)

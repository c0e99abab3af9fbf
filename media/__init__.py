"""Core of the media server: probing, cache keys, single-flight derivation,
range serving and intro/outro detection.

The HTTP layer in ``app.py`` wires these together; nothing in this package
imports FastAPI except :mod:`media.ranges`.
"""
from __future__ import annotations

__all__ = [
    "catalog",
    "config",
    "derive",
    "errors",
    "intro",
    "jobs",
    "locator",
    "logs",
    "markers",
    "probe",
    "ranges",
    "subtitles",
    "thumbs",
    "transcoder",
]

"""Server configuration.

Values come from an optional JSON file (``MEDIA_CONFIG``) and are then
overridden by environment variables, so a container can be tuned without a
config file at all.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CACHE_VERSION = 2  # bump to invalidate old remux outputs


class EncodeConfig(BaseModel):
    crf: int = Field(23, ge=0, le=51)
    preset: str = "veryfast"
    max_height: Optional[int] = Field(None, gt=0)
    aac_bitrate: str = "160k"
    surround_bitrate: str = "384k"
    live_crf: int = Field(26, ge=0, le=51)
    live_max_height: Optional[int] = Field(1080, gt=0)


class PreconvertConfig(BaseModel):
    enabled: bool = True
    max_concurrent: int = Field(1, ge=1, le=16)
    interval_seconds: float = Field(600.0, gt=0)
    startup_delay_seconds: float = Field(30.0, ge=0)


class JobsConfig(BaseModel):
    history_max: int = Field(50, ge=1)
    history_ttl_seconds: float = Field(3600.0, gt=0)
    ffmpeg_timelimit: int = Field(0, ge=0)


class IntroConfig(BaseModel):
    sample_rate: int = Field(8000, gt=0)
    frame_seconds: float = Field(0.25, gt=0)
    smooth_window: int = Field(3, ge=1)
    min_score: float = Field(0.6, ge=-1.0, le=1.0)
    scan_seconds: float = Field(600.0, gt=0)


class ServerConfig(BaseModel):
    root: Path = Path(".")
    cache_version: int = CACHE_VERSION
    cache_dirname: str = ".cache"
    require_include_marker: bool = False
    encode: EncodeConfig = Field(default_factory=EncodeConfig)
    preconvert: PreconvertConfig = Field(default_factory=PreconvertConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    intro: IntroConfig = Field(default_factory=IntroConfig)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except Exception:
        return default


def _env_on(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return str(v).lower() in ("1", "true", "yes", "on")


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    if not isinstance(raw, dict):
        logger.warning("ignoring config %s: top level must be an object", path)
        return {}
    return raw


def load_config(path: str | Path | None = None) -> ServerConfig:
    """Load typed settings from JSON with environment-variable overrides."""
    config_path = path or os.environ.get("MEDIA_CONFIG")
    data: dict[str, Any] = _read_config_file(Path(config_path)) if config_path else {}
    try:
        cfg = ServerConfig.model_validate(data)
    except ValidationError as exc:
        logger.warning("invalid config %s, using defaults: %s", config_path, exc)
        cfg = ServerConfig()

    if os.environ.get("MEDIA_ROOT"):
        cfg.root = Path(os.environ["MEDIA_ROOT"])
    cfg.root = cfg.root.expanduser().resolve()
    cfg.cache_version = _env_int("CACHE_VERSION", cfg.cache_version)
    cfg.require_include_marker = _env_on("INCLUDE_MARKER_REQUIRED", cfg.require_include_marker)

    enc = cfg.encode
    enc.crf = max(0, min(51, _env_int("X264_CRF", enc.crf)))
    enc.preset = os.environ.get("X264_PRESET", enc.preset)
    enc.aac_bitrate = os.environ.get("AAC_BITRATE", enc.aac_bitrate)
    enc.surround_bitrate = os.environ.get("AAC_SURROUND_BITRATE", enc.surround_bitrate)
    enc.live_crf = max(0, min(51, _env_int("LIVE_CRF", enc.live_crf)))
    if os.environ.get("MAX_HEIGHT"):
        h = _env_int("MAX_HEIGHT", 0)
        enc.max_height = h if h > 0 else None

    pre = cfg.preconvert
    pre.enabled = _env_on("PRECONVERT_ENABLED", pre.enabled)
    pre.max_concurrent = max(1, _env_int("PRECONVERT_CONCURRENCY", pre.max_concurrent))
    pre.interval_seconds = max(1.0, _env_float("PRECONVERT_INTERVAL", pre.interval_seconds))
    pre.startup_delay_seconds = max(0.0, _env_float("PRECONVERT_DELAY", pre.startup_delay_seconds))

    jobs = cfg.jobs
    jobs.history_max = max(1, _env_int("JOB_HISTORY_MAX", jobs.history_max))
    jobs.history_ttl_seconds = max(1.0, _env_float("JOB_HISTORY_TTL", jobs.history_ttl_seconds))
    jobs.ffmpeg_timelimit = max(0, _env_int("FFMPEG_TIMELIMIT", jobs.ffmpeg_timelimit))

    intro = cfg.intro
    intro.min_score = _env_float("INTRO_MIN_SCORE", intro.min_score)
    intro.scan_seconds = max(1.0, _env_float("INTRO_SCAN_SECONDS", intro.scan_seconds))
    return cfg

from __future__ import annotations

import json
import os
import subprocess
import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from .logs import log


@dataclass(frozen=True)
class ProbedMetadata:
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    audio_channels: Optional[int] = None
    duration: Optional[float] = None
    video_start: float = 0.0
    audio_start: float = 0.0

    @property
    def start_offset(self) -> float:
        """Seconds the audio track starts after the video track (negative: before)."""
        return self.audio_start - self.video_start

    def to_dict(self) -> dict:
        return {
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
            "audio_channels": self.audio_channels,
            "duration": self.duration,
            "video_start": self.video_start,
            "audio_start": self.audio_start,
        }


def _to_float(raw: Any) -> Optional[float]:
    if raw in (None, "N/A", ""):
        return None
    try:
        v = float(raw)
    except (TypeError, ValueError):
        return None
    if v != v or v in (float("inf"), float("-inf")):
        return None
    return v


def _to_int(raw: Any) -> Optional[int]:
    if raw in (None, "N/A", ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _run_ffprobe(path: Path, ffprobe_bin: str, timeout: float) -> dict[str, Any]:
    cmd = [
        ffprobe_bin,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    completed = subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=timeout)
    return json.loads(completed.stdout)


def normalize_probe_payload(payload: dict[str, Any]) -> ProbedMetadata:
    streams = payload.get("streams") or []
    fmt = payload.get("format") or {}
    video = next((s for s in streams if (s or {}).get("codec_type") == "video"), None)
    audio = next((s for s in streams if (s or {}).get("codec_type") == "audio"), None)
    duration = _to_float(fmt.get("duration"))
    if duration is None and video:
        duration = _to_float(video.get("duration"))
    return ProbedMetadata(
        video_codec=(video.get("codec_name") or video.get("codec_long_name")) if video else None,
        audio_codec=(audio.get("codec_name") or audio.get("codec_long_name")) if audio else None,
        audio_channels=_to_int(audio.get("channels")) if audio else None,
        duration=duration,
        video_start=(_to_float(video.get("start_time")) or 0.0) if video else 0.0,
        audio_start=(_to_float(audio.get("start_time")) or 0.0) if audio else 0.0,
    )


def probe(path: str | Path, *, ffprobe_bin: Optional[str] = None, timeout: float = 30.0) -> Optional[ProbedMetadata]:
    """Inspect a media file with ffprobe.

    Never raises. Any failure returns None, and callers fall back to the
    safest assumption (re-encode everything, unknown duration).
    """
    if os.environ.get("FFPROBE_DISABLE"):
        return None
    binary = ffprobe_bin or os.environ.get("FFPROBE") or "ffprobe"
    p = Path(path)
    try:
        payload = _run_ffprobe(p, binary, timeout)
        return normalize_probe_payload(payload)
    except OSError as exc:
        reason = "ffprobe-missing" if isinstance(exc, FileNotFoundError) else exc.strerror
        log("probe", f"probe unavailable path={p} errno={exc.errno} reason={reason}")
    except subprocess.TimeoutExpired:
        log("probe", f"probe timeout path={p} after={timeout}s")
    except subprocess.CalledProcessError as exc:
        err = (exc.stderr or "").strip()[:400]
        log("probe", f"probe fail path={p} code={exc.returncode} stderr={err!r}")
    except (ValueError, TypeError, AttributeError) as exc:
        log("probe", f"probe unreadable path={p} err={exc}")
    return None


class ProbeCache:
    """In-memory memo of probe results keyed by (absolute path, size, mtime).

    Failed probes are memoized as well; a rewritten file gets a new key.
    """

    def __init__(self, prober: Callable[[Path], Optional[ProbedMetadata]] = probe, max_entries: int = 4096):
        self._prober = prober
        self._max = max(1, int(max_entries))
        self._entries: "OrderedDict[tuple[str, int, int], Optional[ProbedMetadata]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, path: Path) -> Optional[ProbedMetadata]:
        try:
            st = path.stat()
        except OSError:
            return None
        key = (str(path.resolve()), int(st.st_size), int(st.st_mtime_ns))
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return self._entries[key]
        meta = self._prober(path)
        with self._lock:
            self._entries[key] = meta
            self._entries.move_to_end(key)
            while len(self._entries) > self._max:
                self._entries.popitem(last=False)
        return meta

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

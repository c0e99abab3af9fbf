"""
Hand-written playback markers.

``.skipintro`` and ``.nextepisode`` files apply to every video in their
folder and below; the nearest file wins. Examples::

    # .skipintro
    start: 00:03
    end -> 01:10.500

    # .nextepisode  (negative counts from the end)
    next = -01:05
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

SKIP_INTRO_FILE = ".skipintro"
NEXT_EPISODE_FILE = ".nextepisode"

_CLOCK = re.compile(r"^(?:(\d{1,2}):)?(\d{1,2}):(\d{2})(?:\.(\d{1,3}))?$")
_START = re.compile(r"^(start|s)\s*(?:->|:|=)?\s*([^#;]+)", re.IGNORECASE)
_END = re.compile(r"^(end|e)\s*(?:->|:|=)?\s*([^#;]+)", re.IGNORECASE)
_NEXT = re.compile(r"^(nextepisode|next|outro|o)\s*(?:->|:|=)?\s*([^#;]+)", re.IGNORECASE)


def parse_clock(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    m = _CLOCK.match(str(value).strip())
    if not m:
        return None
    hh = int(m.group(1) or 0)
    mm = int(m.group(2))
    ss = int(m.group(3))
    frac = m.group(4)
    ms = int(frac.ljust(3, "0")) if frac else 0
    return hh * 3600 + mm * 60 + ss + ms / 1000.0


def parse_signed_clock(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    s = str(value).strip()
    sign = -1.0 if s.startswith("-") else 1.0
    secs = parse_clock(s.lstrip("+-"))
    return None if secs is None else sign * secs


def _read_lines(path: Path) -> list[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return []


def parse_skip_intro(path: Path) -> Optional[tuple[float, float]]:
    start = end = None
    for line in _read_lines(path):
        ln = line.strip()
        if not ln:
            continue
        m = _START.match(ln)
        if m:
            v = parse_clock(m.group(2))
            if v is not None:
                start = v
        n = _END.match(ln)
        if n:
            v = parse_clock(n.group(2))
            if v is not None:
                end = v
    if start is not None and end is not None and end > start:
        return start, end
    return None


def parse_next_episode(path: Path) -> Optional[float]:
    offset = None
    for line in _read_lines(path):
        ln = line.strip()
        if not ln or ln.startswith("#") or ln.startswith("//"):
            continue
        m = _NEXT.match(ln)
        if m:
            v = parse_signed_clock(m.group(2))
            if v is not None:
                offset = v
    return offset


def _walk_up(video: Path, root: Path, filename: str):
    root = root.resolve()
    d = video.resolve().parent
    while True:
        try:
            d.relative_to(root)
        except ValueError:
            break
        cand = d / filename
        if cand.is_file():
            yield cand
        if d == root:
            break
        d = d.parent


def find_skip_intro(video: Path, root: Path) -> Optional[tuple[float, float]]:
    for cand in _walk_up(video, root, SKIP_INTRO_FILE):
        window = parse_skip_intro(cand)
        if window:
            return window
    return None


def find_next_episode(video: Path, root: Path) -> Optional[float]:
    for cand in _walk_up(video, root, NEXT_EPISODE_FILE):
        offset = parse_next_episode(cand)
        if offset is not None:
            return offset
    return None


def next_episode_at(offset: float, duration: Optional[float]) -> Optional[float]:
    """Absolute trigger time; negative offsets count back from the end."""
    if duration is None:
        return None
    if offset < 0:
        return max(0.0, duration + offset)
    return max(0.0, min(duration, offset))

from __future__ import annotations

import mimetypes
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

ALLOWED_EXTS = {".mp4", ".webm", ".mkv", ".mov", ".m4v", ".avi"}
INCLUDE_MARKER = ".include"
EXCLUDED_DIRS = {".cache", "node_modules"}
UNCATEGORIZED = "Uncategorized"

_MIME_OVERRIDES = {
    ".mkv": "video/x-matroska",
    ".m4v": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
}

_DIGITS = re.compile(r"(\d+)")


def guess_mime(path: str | Path) -> str:
    ext = Path(path).suffix.lower()
    if ext in _MIME_OVERRIDES:
        return _MIME_OVERRIDES[ext]
    return mimetypes.guess_type(str(path))[0] or "application/octet-stream"


@dataclass(frozen=True)
class SourceFile:
    rel_path: str
    size: int
    mtime_ns: int
    ext: str

    @property
    def name(self) -> str:
        return self.rel_path.rsplit("/", 1)[-1]

    @property
    def category(self) -> str:
        parts = self.rel_path.split("/")
        return parts[0] if len(parts) > 1 else UNCATEGORIZED

    @property
    def mime(self) -> str:
        return guess_mime(self.rel_path)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "relPath": self.rel_path,
            "size": self.size,
            "mtime": self.mtime_ns / 1e6,
            "ext": self.ext,
            "mime": self.mime,
            "category": self.category,
        }


def episode_sort_key(rel_path: str) -> tuple:
    """Natural order: digit runs compare numerically, so E2 sorts before E10."""
    parts = _DIGITS.split(rel_path.lower())
    return tuple((0, int(p)) if p.isdigit() else (1, p) for p in parts if p != "")


def _walk(directory: Path, root: Path, included: bool, require_marker: bool) -> Iterator[SourceFile]:
    try:
        entries = list(os.scandir(directory))
    except OSError:
        return
    here = included or not require_marker or any(
        e.is_file() and e.name.lower() == INCLUDE_MARKER for e in entries
    )
    for e in entries:
        if e.is_dir(follow_symlinks=False):
            if e.name in EXCLUDED_DIRS or e.name.startswith("."):
                continue
            yield from _walk(Path(e.path), root, here, require_marker)
        elif here and e.is_file():
            ext = os.path.splitext(e.name)[1].lower()
            if ext not in ALLOWED_EXTS:
                continue
            try:
                st = e.stat()
            except OSError:
                continue
            rel = Path(e.path).relative_to(root).as_posix()
            yield SourceFile(rel, int(st.st_size), int(st.st_mtime_ns), ext)


def walk(root: Path, *, require_marker: bool = False) -> list[SourceFile]:
    """List playable files under ``root``.

    With ``require_marker`` only folders containing an ``.include`` file (and
    everything beneath them) contribute files.
    """
    root = Path(root).resolve()
    if not root.is_dir():
        return []
    return list(_walk(root, root, False, require_marker))


def group_by_category(items: Iterable[SourceFile]) -> list[dict]:
    groups: dict[str, list[SourceFile]] = {}
    for it in items:
        groups.setdefault(it.category, []).append(it)
    return [
        {"key": name, "name": name, "count": len(its), "items": [i.to_dict() for i in its]}
        for name, its in sorted(groups.items(), key=lambda kv: kv[0].lower())
    ]

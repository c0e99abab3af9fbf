from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .config import CACHE_VERSION

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")
STEM_MAX = 60
DIGEST_LEN = 16


@dataclass(frozen=True)
class CacheKey:
    """Identity of a derived artifact. Any field change yields a new key."""

    version: int
    rel_path: str
    size: int
    mtime_ns: int

    @property
    def digest(self) -> str:
        raw = f"v{self.version}:{self.rel_path}:{self.size}:{self.mtime_ns}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Artifact:
    path: Path
    rel_path: str

    def exists(self) -> bool:
        try:
            return self.path.is_file()
        except OSError:
            return False


def sanitize_stem(name: str) -> str:
    stem = PurePosixPath(name).stem
    safe = _UNSAFE.sub("_", stem)[-STEM_MAX:]
    return safe or "video"


def category_of(rel_path: str) -> str | None:
    parts = PurePosixPath(rel_path.replace("\\", "/")).parts
    return parts[0] if len(parts) > 1 else None


class ArtifactLocator:
    """Maps (relative source path, size, mtime) to a cache file under the root.

    Each top-level category folder gets its own ``.cache`` so one title's cache
    can be pruned without touching the others; loose files share the root one.
    """

    def __init__(self, root: Path, *, version: int = CACHE_VERSION, cache_dirname: str = ".cache"):
        self.root = Path(root).resolve()
        self.version = int(version)
        self.cache_dirname = cache_dirname

    def key_for(self, rel_path: str, size: int, mtime_ns: int) -> CacheKey:
        return CacheKey(self.version, rel_path.replace("\\", "/"), int(size), int(mtime_ns))

    def scope_dir_for(self, rel_path: str) -> Path:
        cat = category_of(rel_path)
        if cat:
            return self.root / cat / self.cache_dirname
        return self.root / self.cache_dirname

    cache_dir_for = scope_dir_for

    def artifact_for(self, key: CacheKey) -> Artifact:
        name = f"{sanitize_stem(key.rel_path)}-{key.digest[:DIGEST_LEN]}.mp4"
        abs_path = self.scope_dir_for(key.rel_path) / name
        return Artifact(abs_path, abs_path.relative_to(self.root).as_posix())

    def locate(self, rel_path: str, size: int, mtime_ns: int) -> tuple[Path, str]:
        art = self.artifact_for(self.key_for(rel_path, size, mtime_ns))
        return art.path, art.rel_path

    def key_for_file(self, source: Path, rel_path: str) -> CacheKey:
        st = source.stat()
        return self.key_for(rel_path, st.st_size, st.st_mtime_ns)

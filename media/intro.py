"""
Intro/outro detection by audio fingerprint.

A known reference clip (the show's theme) is located inside an episode by
sliding its smoothed RMS-energy envelope over the episode's envelope and
taking the offset with the highest Pearson correlation. Correlation is
computed per window after zero-mean/unit-variance normalisation, so overall
loudness differences between files do not matter.

Verdicts are persisted per cache scope in ``intro.json`` together with the
size/mtime of both the episode and the reference, so a changed file is
re-examined. Negative verdicts ("unreferenced", "failed") are cached as well;
they never produce a skip window.
"""
from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
import weakref
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from .errors import NotFound
from .logs import log

logger = logging.getLogger(__name__)

KINDS = ("intro", "outro")
REFERENCE_EXTS = (".mp3", ".wav", ".m4a", ".aac", ".flac", ".ogg", ".opus", ".mka", ".mp4", ".mkv")
STORE_FILENAME = "intro.json"
STORE_VERSION = 1
_EPS = 1e-9
_SEASON = re.compile(r"S(\d{1,3})E\d{1,3}", re.IGNORECASE)
_MAP_LINE = re.compile(r"^\s*([^=:#]+?)\s*[=:]\s*(.+?)\s*$")
_SEASON_KEY = re.compile(r"^(?:s|season\s*)?0*(\d{1,3})$", re.IGNORECASE)


@dataclass
class DetectorSettings:
    sample_rate: int = 8000
    frame_seconds: float = 0.25
    smooth_window: int = 3
    min_score: float = 0.6
    scan_seconds: float = 600.0

    @classmethod
    def from_config(cls, intro) -> "DetectorSettings":
        return cls(
            sample_rate=intro.sample_rate,
            frame_seconds=intro.frame_seconds,
            smooth_window=intro.smooth_window,
            min_score=intro.min_score,
            scan_seconds=intro.scan_seconds,
        )


# ---------------------------------------------------------------------------
# Signal helpers
# ---------------------------------------------------------------------------

def pcm_to_samples(raw: bytes) -> np.ndarray:
    """s16le bytes -> float32 samples in [-1, 1). A trailing odd byte is dropped."""
    n = len(raw) // 2
    if n == 0:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(raw[: n * 2], dtype="<i2").astype(np.float32) / 32768.0


def rms_envelope(samples: np.ndarray, sample_rate: int, frame_seconds: float) -> np.ndarray:
    frame = max(1, int(round(sample_rate * frame_seconds)))
    n = len(samples) // frame
    if n == 0:
        return np.zeros(0, dtype=np.float64)
    frames = np.asarray(samples[: n * frame], dtype=np.float64).reshape(n, frame)
    return np.sqrt(np.mean(frames * frames, axis=1))


def smooth(envelope: np.ndarray, window: int) -> np.ndarray:
    """Centered moving average; edges are padded with the edge value."""
    env = np.asarray(envelope, dtype=np.float64)
    if window <= 1 or env.size == 0:
        return env
    left = window // 2
    padded = np.pad(env, (left, window - 1 - left), mode="edge")
    return np.convolve(padded, np.ones(window) / window, mode="valid")


def sliding_pearson(reference: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Pearson correlation of ``reference`` with every same-length window of ``target``."""
    ref = np.asarray(reference, dtype=np.float64)
    tgt = np.asarray(target, dtype=np.float64)
    m = ref.size
    if m < 2 or tgt.size < m:
        return np.zeros(0, dtype=np.float64)
    ref_c = ref - ref.mean()
    ref_std = ref_c.std()
    windows = np.lib.stride_tricks.sliding_window_view(tgt, m)
    if ref_std < _EPS:
        return np.zeros(windows.shape[0], dtype=np.float64)
    ref_n = ref_c / ref_std
    win_std = windows.std(axis=1)
    # ref_n has zero mean, so the window mean drops out of the dot product
    dots = windows @ ref_n
    scores = np.zeros(windows.shape[0], dtype=np.float64)
    ok = win_std > _EPS
    scores[ok] = dots[ok] / (m * win_std[ok])
    return np.clip(scores, -1.0, 1.0)


def best_alignment(reference: np.ndarray, target: np.ndarray) -> tuple[int, float]:
    scores = sliding_pearson(reference, target)
    if scores.size == 0:
        return 0, 0.0
    idx = int(np.argmax(scores))
    return idx, float(scores[idx])


# ---------------------------------------------------------------------------
# Verdicts and their persistence
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SkipWindow:
    start: float
    end: float
    score: float
    reference: Optional[str] = None
    kind: str = "intro"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Verdict:
    status: str  # ok | failed | unreferenced
    kind: str = "intro"
    reason: Optional[str] = None
    start: Optional[float] = None
    end: Optional[float] = None
    score: Optional[float] = None
    reference: Optional[str] = None
    source_size: Optional[int] = None
    source_mtime_ns: Optional[int] = None
    reference_size: Optional[int] = None
    reference_mtime_ns: Optional[int] = None
    checked_at: float = field(default_factory=time.time)

    def window(self) -> Optional[SkipWindow]:
        if self.status != "ok" or self.start is None or self.end is None or self.end <= self.start:
            return None
        return SkipWindow(self.start, self.end, float(self.score or 0.0), self.reference, self.kind)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict) -> Optional["Verdict"]:
        if not isinstance(raw, dict) or raw.get("status") not in ("ok", "failed", "unreferenced"):
            return None
        known = {k: raw.get(k) for k in cls.__dataclass_fields__ if k in raw}
        try:
            return cls(**known)
        except TypeError:
            return None


class VerdictStore:
    """``{rel_path: {kind: verdict}}`` in one JSON file per cache scope."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("discarding unreadable verdict store %s: %s", self.path, exc)
            return {}
        entries = raw.get("entries") if isinstance(raw, dict) else None
        return entries if isinstance(entries, dict) else {}

    def get(self, rel_path: str, kind: str = "intro") -> Optional[Verdict]:
        with self._lock:
            entry = (self._load().get(rel_path) or {}).get(kind)
        return Verdict.from_dict(entry) if entry else None

    def put(self, rel_path: str, verdict: Verdict) -> None:
        with self._lock:
            entries = self._load()
            entries.setdefault(rel_path, {})[verdict.kind] = verdict.to_dict()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
            tmp.write_text(json.dumps({"version": STORE_VERSION, "entries": entries}, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp, self.path)


# ---------------------------------------------------------------------------
# Reference resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReferenceLookup:
    path: Optional[Path] = None
    reason: Optional[str] = None


def _season_of(source: Path) -> Optional[int]:
    m = _SEASON.search(source.stem)
    return int(m.group(1)) if m else None


def _read_mapping(mapping: Path, season: Optional[int]) -> Optional[str]:
    """Pick the entry for ``season`` (``s02 = clip.mp3``), else ``default``."""
    default = None
    try:
        lines = mapping.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return None
    for line in lines:
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = _MAP_LINE.match(line)
        if not m:
            # a bare path applies to every season
            default = default or line.strip()
            continue
        key, value = m.group(1).strip(), m.group(2).strip()
        if key.lower() == "default":
            default = value
            continue
        sk = _SEASON_KEY.match(key)
        if sk and season is not None and int(sk.group(1)) == season:
            return value
    return default


def _conventional_clip(directory: Path, kind: str, season: Optional[int]) -> Optional[Path]:
    try:
        files = [p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in REFERENCE_EXTS]
    except OSError:
        return None
    by_stem = {p.stem.lower(): p for p in files}
    names: list[str] = []
    if season is not None:
        names += [f"{kind}.s{season:02d}", f"{kind}.s{season}", f"{kind}-s{season:02d}", f"{kind}_s{season:02d}"]
    names += [kind, f".{kind}"]
    for n in names:
        if n in by_stem:
            return by_stem[n]
    return None


def find_reference(source: Path, root: Path, kind: str = "intro") -> ReferenceLookup:
    """Nearest reference clip for ``source``, searching up to ``root``.

    A ``.introref`` / ``.outroref`` mapping file wins over conventionally named
    clips (``intro.s02.mp3``, ``intro.mp3``) in the same folder.
    """
    root = Path(root).resolve()
    season = _season_of(source)
    d = source.resolve().parent
    while True:
        try:
            d.relative_to(root)
        except ValueError:
            break
        mapping = d / f".{kind}ref"
        if mapping.is_file():
            target = _read_mapping(mapping, season)
            if target:
                p = (d / target).resolve()
                if p.is_file():
                    return ReferenceLookup(p)
                return ReferenceLookup(None, "reference-missing")
        clip = _conventional_clip(d, kind, season)
        if clip is not None:
            return ReferenceLookup(clip.resolve())
        if d == root:
            break
        d = d.parent
    return ReferenceLookup(None, "no-reference")


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

PcmLoader = Callable[..., bytes]


class IntroDetector:
    def __init__(
        self,
        *,
        store_path_for: Callable[[str], Path],
        resolve_reference: Callable[[Path, str], ReferenceLookup],
        load_pcm: PcmLoader,
        duration_of: Optional[Callable[[Path], Optional[float]]] = None,
        settings: Optional[DetectorSettings] = None,
    ):
        self.store_path_for = store_path_for
        self.resolve_reference = resolve_reference
        self.load_pcm = load_pcm
        self.duration_of = duration_of
        self.settings = settings or DetectorSettings()
        self._stores: dict[Path, VerdictStore] = {}
        self._locks: "weakref.WeakValueDictionary[tuple[str, str], threading.Lock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def store_for(self, rel_path: str) -> VerdictStore:
        path = Path(self.store_path_for(rel_path))
        with self._guard:
            store = self._stores.get(path)
            if store is None:
                store = VerdictStore(path)
                self._stores[path] = store
            return store

    def _lock_for(self, rel_path: str, kind: str) -> threading.Lock:
        # entries drop out once no caller references the lock
        with self._guard:
            lk = self._locks.get((rel_path, kind))
            if lk is None:
                lk = threading.Lock()
                self._locks[(rel_path, kind)] = lk
            return lk

    def detect(self, source: Path, rel_path: str, kind: str = "intro") -> Optional[SkipWindow]:
        """Skip window for ``source`` or None when no match is known."""
        return self.verdict(source, rel_path, kind).window()

    def cached(self, rel_path: str, kind: str = "intro") -> Optional[Verdict]:
        return self.store_for(rel_path).get(rel_path, kind)

    def verdict(self, source: Path, rel_path: str, kind: str = "intro", *, force: bool = False) -> Verdict:
        if kind not in KINDS:
            raise ValueError(f"unknown kind: {kind}")
        try:
            st = source.stat()
        except OSError:
            raise NotFound() from None
        with self._lock_for(rel_path, kind):
            store = self.store_for(rel_path)
            lookup = self.resolve_reference(source, kind)
            cached = store.get(rel_path, kind)
            if not force and cached is not None and self._fresh(cached, st, lookup):
                return cached
            verdict = self._compute(source, st, lookup, kind)
            store.put(rel_path, verdict)
        log("intro", f"[intro] {kind} path={rel_path} status={verdict.status} reason={verdict.reason} score={verdict.score}")
        return verdict

    @staticmethod
    def _fresh(cached: Verdict, st: os.stat_result, lookup: ReferenceLookup) -> bool:
        if cached.source_size != st.st_size or cached.source_mtime_ns != st.st_mtime_ns:
            return False
        if cached.status == "unreferenced":
            # resolving is cheap; only the decode is worth caching
            return lookup.path is None
        if lookup.path is None or str(lookup.path) != cached.reference:
            return False
        try:
            rst = lookup.path.stat()
        except OSError:
            return False
        return cached.reference_size == rst.st_size and cached.reference_mtime_ns == rst.st_mtime_ns

    def _compute(self, source: Path, st: os.stat_result, lookup: ReferenceLookup, kind: str) -> Verdict:
        s = self.settings
        base = {"kind": kind, "source_size": st.st_size, "source_mtime_ns": st.st_mtime_ns}
        if lookup.path is None:
            return Verdict(status="unreferenced", reason=lookup.reason or "no-reference", **base)
        ref = lookup.path
        base["reference"] = str(ref)
        try:
            rst = ref.stat()
        except OSError as exc:
            log("intro", f"[intro] reference unloadable ref={ref} err={exc}", logging.WARNING)
            return Verdict(status="failed", reason="reference-unloadable", **base)
        base["reference_size"] = rst.st_size
        base["reference_mtime_ns"] = rst.st_mtime_ns

        duration = self.duration_of(source) if self.duration_of else None
        scan_start = 0.0
        if kind == "outro":
            # the tail cannot be located without a duration
            if not duration:
                return Verdict(status="failed", reason="duration-unknown", **base)
            scan_start = max(0.0, duration - s.scan_seconds)

        try:
            ref_samples = pcm_to_samples(self.load_pcm(ref, sample_rate=s.sample_rate))
        except Exception as exc:  # noqa: BLE001
            log("intro", f"[intro] reference unloadable ref={ref} err={exc}", logging.WARNING)
            return Verdict(status="failed", reason="reference-unloadable", **base)
        ref_env = smooth(rms_envelope(ref_samples, s.sample_rate, s.frame_seconds), s.smooth_window)
        if ref_env.size < 2:
            return Verdict(status="failed", reason="reference-unloadable", **base)
        ref_duration = len(ref_samples) / float(s.sample_rate)

        try:
            raw = self.load_pcm(source, sample_rate=s.sample_rate, start=scan_start or None, duration=s.scan_seconds)
        except Exception as exc:  # noqa: BLE001
            log("intro", f"[intro] source unloadable path={source} err={exc}", logging.WARNING)
            return Verdict(status="failed", reason="source-unloadable", **base)
        tgt_env = smooth(rms_envelope(pcm_to_samples(raw), s.sample_rate, s.frame_seconds), s.smooth_window)

        offset, score = best_alignment(ref_env, tgt_env)
        score = round(score, 4)
        if score < s.min_score:
            return Verdict(status="failed", reason="low-confidence", score=score, **base)
        start = scan_start + offset * s.frame_seconds
        end = start + ref_duration
        if duration:
            end = min(end, duration)
        if end <= start:
            return Verdict(status="failed", reason="invalid-window", score=score, **base)
        return Verdict(status="ok", start=round(start, 3), end=round(end, 3), score=score, **base)

from __future__ import annotations

import hashlib
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .logs import log

SUB_EXTS = {".vtt", ".srt", ".ass", ".ssa"}

# Tried in order; latin_1 accepts any byte sequence so it terminates the search.
LEGACY_ENCODINGS = ("cp1254", "iso8859_9", "cp1252", "cp1251", "iso8859_2", "latin_1")

_LANG_LABELS = {
    "en": "English",
    "tr": "Turkish",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "ru": "Russian",
    "ar": "Arabic",
    "fa": "Persian",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
}

# mp4 track language tags are ISO 639-2
_ISO639_2 = {
    "en": "eng", "tr": "tur", "es": "spa", "fr": "fre", "de": "ger", "it": "ita",
    "pt": "por", "ru": "rus", "ar": "ara", "fa": "per", "zh": "chi", "ja": "jpn", "ko": "kor",
}

_LANG_SUFFIX = re.compile(r"[.\-_]([a-z]{2,3})(?:-[A-Za-z]{2})?$", re.IGNORECASE)
_EPISODE = re.compile(r"S(\d{1,3})E(\d{1,3})", re.IGNORECASE)
_CUE = re.compile(r"^((?:\d{2,}:)?\d{2}:\d{2}\.\d{3}) --> ((?:\d{2,}:)?\d{2}:\d{2}\.\d{3})(.*)$", re.MULTILINE)
_CUE_TIME = re.compile(r"(?:(\d{2,}):)?(\d{2}):(\d{2})\.(\d{3})")


@dataclass(frozen=True)
class SubtitleTrack:
    path: Path
    lang: str
    label: str

    @property
    def file(self) -> str:
        return self.path.name


def lang_label(code: str) -> str:
    return _LANG_LABELS.get(code, code.upper())


def iso639_2(code: str) -> str:
    if len(code) == 3:
        return code.lower()
    return _ISO639_2.get(code.lower(), "und")


def parse_lang_from_filename(name: str) -> Optional[str]:
    m = _LANG_SUFFIX.search(Path(name).stem)
    return m.group(1).lower() if m else None


def _matches_episode(name_lower: str, season: int, episode: int) -> bool:
    if re.search(rf"s0*{season}e0*{episode}(?!\d)", name_lower):
        return True
    # tolerate one separator: s02.e01, s02 e01
    return bool(re.search(rf"s0*{season}[^a-z0-9]?e0*{episode}(?!\d)", name_lower))


def find_subtitles(video: Path) -> list[SubtitleTrack]:
    """Subtitle files next to ``video``, English first then by language."""
    base = video.stem
    token = _EPISODE.search(base)
    season = int(token.group(1)) if token else None
    episode = int(token.group(2)) if token else None
    try:
        entries = list(video.parent.iterdir())
    except OSError:
        return []
    out: list[SubtitleTrack] = []
    for p in entries:
        if not p.is_file() or p.suffix.lower() not in SUB_EXTS:
            continue
        if season is not None and episode is not None:
            ok = _matches_episode(p.name.lower(), season, episode)
        else:
            ok = base.lower() in p.stem.lower()
        if ok:
            lang = parse_lang_from_filename(p.name) or "en"
            out.append(SubtitleTrack(p, lang, lang_label(lang)))
    out.sort(key=lambda t: (t.lang != "en", t.lang, t.path.name))
    return out


def is_utf8(data: bytes) -> bool:
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def transliterate(data: bytes, encodings: tuple[str, ...] = LEGACY_ENCODINGS) -> tuple[str, str]:
    """Decode legacy-encoded subtitle bytes; returns (text, encoding used)."""
    for enc in encodings:
        try:
            return data.decode(enc), enc
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace"), "utf-8-replace"


class SubtitleCache:
    """Stores UTF-8 copies of legacy-encoded subtitles, keyed by content hash."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def ensure_utf8(self, path: Path) -> Path:
        data = path.read_bytes()
        if is_utf8(data):
            return path
        digest = hashlib.sha256(data).hexdigest()[:24]
        out = self.directory / f"{digest}.utf8{path.suffix.lower()}"
        with self._lock:
            if out.is_file():
                return out
            text, enc = transliterate(data)
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = out.with_name(f".{out.name}.{os.getpid()}.tmp")
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, out)
        log("subs", f"[subs] converted path={path.name} from={enc} out={out.name}")
        return out


def _fmt_ms(ms: int) -> str:
    t = max(0, int(ms))
    h, t = divmod(t, 3_600_000)
    m, t = divmod(t, 60_000)
    s, t = divmod(t, 1000)
    return f"{h:02d}:{m:02d}:{s:02d}.{t:03d}"


def _cue_ms(value: str) -> int:
    m = _CUE_TIME.match(value)
    if not m:
        return 0
    h = int(m.group(1) or 0)
    return ((h * 60 + int(m.group(2))) * 60 + int(m.group(3))) * 1000 + int(m.group(4))


def shift_webvtt(content: str, offset_ms: int) -> str:
    """Shift every cue timing line by ``offset_ms``; times clamp at zero."""
    if not offset_ms:
        return content

    def _sub(m: re.Match) -> str:
        start = _cue_ms(m.group(1)) + offset_ms
        end = _cue_ms(m.group(2)) + offset_ms
        return f"{_fmt_ms(start)} --> {_fmt_ms(end)}{m.group(3)}"

    return _CUE.sub(_sub, content)

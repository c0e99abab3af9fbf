from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from PIL import Image

from .logs import log
from .transcoder import TranscodeError, Transcoder, ffmpeg_available

THUMB_EXTS = (".jpg", ".jpeg", ".png", ".webp")
FALLBACK_NAMES = ("fallback", "cover", "poster", "folder", "thumbnail", "thumb")
THUMB_WIDTH = 480


def _images_in(directory: Path) -> list[Path]:
    try:
        return [p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in THUMB_EXTS]
    except OSError:
        return []


def find_thumbnail(video: Path, root: Path) -> Optional[Path]:
    """Sibling image with the video's stem, else a folder-level cover image."""
    stem = video.stem.lower()
    local = _images_in(video.parent)
    for p in local:
        if p.stem.lower() == stem:
            return p
    for images in (local, _images_in(root)):
        by_name = {p.stem.lower(): p for p in images}
        for name in FALLBACK_NAMES:
            if name in by_name:
                return by_name[name]
    return None


def _placeholder(out: Path, width: int = 320, height: int = 180) -> None:
    img = Image.new("RGB", (width, height), color=(17, 17, 17))
    img.save(out, format="JPEG", quality=80)


def ensure_thumbnail(video: Path, out: Path, transcoder: Transcoder, *, at: float = 10.0, width: int = THUMB_WIDTH) -> Path:
    """Generate a JPEG thumbnail for ``video`` at ``out`` unless it already exists."""
    if out.is_file() and out.stat().st_size > 0:
        return out
    out.parent.mkdir(parents=True, exist_ok=True)
    tmp = out.with_name(f".{out.stem}.{os.getpid()}.tmp.jpg")
    try:
        if not ffmpeg_available():
            _placeholder(tmp)
            log("ffmpeg", f"[thumb] placeholder written (ffmpeg missing) path={video.name}")
        else:
            try:
                transcoder.grab_frame(video, tmp, at=at, width=width)
            except TranscodeError:
                # short clips: retry from the first frame
                transcoder.grab_frame(video, tmp, at=0.0, width=width)
            with Image.open(tmp) as img:
                if img.width > width:
                    img.thumbnail((width, width * 4))
                    img.convert("RGB").save(tmp, format="JPEG", quality=85)
        os.replace(tmp, out)
    finally:
        tmp.unlink(missing_ok=True)
    return out

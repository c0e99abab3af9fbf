"""
Derivation engine: decide how to turn a source into a fast-start MP4 and
drive ffmpeg to produce it.

The decision table lives in ``classify_video`` / ``classify_audio`` /
``plan_derivation`` so it can be tested without ffmpeg. ``DerivationEngine``
adds the process orchestration: temporary output, atomic promotion, cleanup
on failure, and progress forwarding into the job registry.
"""
from __future__ import annotations

import enum
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .errors import ProductionFailed
from .locator import Artifact
from .logs import log
from .probe import ProbedMetadata
from .subtitles import SubtitleCache, SubtitleTrack, iso639_2
from .transcoder import Transcoder

NATIVE_EXTS = {".mp4", ".webm"}
DERIVE_EXTS = {".mkv", ".avi", ".mov", ".m4v"}

_HEVC_TOKENS = ("hevc", "h265", "hvc1", "hev1")
_AVC_TOKENS = ("h264", "avc")
_AUDIO_COPY_TOKENS = ("aac", "mp3")


class Handling(enum.Enum):
    COPY = "copy"
    REENCODE = "reencode"


def is_hevc(codec: Optional[str]) -> bool:
    c = (codec or "").lower()
    return any(t in c for t in _HEVC_TOKENS)


def classify_video(codec: Optional[str]) -> Handling:
    c = (codec or "").lower()
    if any(t in c for t in _AVC_TOKENS + _HEVC_TOKENS):
        return Handling.COPY
    return Handling.REENCODE


def classify_audio(codec: Optional[str]) -> Handling:
    c = (codec or "").lower()
    if any(t in c for t in _AUDIO_COPY_TOKENS):
        return Handling.COPY
    return Handling.REENCODE


def needs_derivation(ext: str) -> bool:
    return ext.lower() in DERIVE_EXTS


@dataclass
class EncodeSettings:
    crf: int = 23
    preset: str = "veryfast"
    max_height: Optional[int] = None
    aac_bitrate: str = "160k"
    surround_bitrate: str = "384k"
    live_crf: int = 26
    live_max_height: Optional[int] = 1080

    @classmethod
    def from_config(cls, enc) -> "EncodeSettings":
        return cls(
            crf=enc.crf,
            preset=enc.preset,
            max_height=enc.max_height,
            aac_bitrate=enc.aac_bitrate,
            surround_bitrate=enc.surround_bitrate,
            live_crf=enc.live_crf,
            live_max_height=enc.live_max_height,
        )


@dataclass
class DerivationPlan:
    video: Handling
    audio: Handling
    hevc_tag: bool = False
    surround: bool = False
    subtitle: Optional[SubtitleTrack] = None

    @property
    def remux_only(self) -> bool:
        return self.video is Handling.COPY and self.audio is Handling.COPY

    def describe(self) -> str:
        parts = [f"video={self.video.value}", f"audio={self.audio.value}"]
        if self.hevc_tag:
            parts.append("tag=hvc1")
        if self.audio is Handling.REENCODE:
            parts.append("layout=5.1" if self.surround else "layout=stereo")
        if self.subtitle is not None:
            parts.append(f"subs={self.subtitle.lang}")
        return " ".join(parts)


def plan_derivation(
    meta: Optional[ProbedMetadata],
    subtitle: Optional[SubtitleTrack] = None,
    settings: Optional[EncodeSettings] = None,
) -> DerivationPlan:
    """Pick copy vs re-encode per track. Unknown metadata re-encodes both."""
    if meta is None:
        return DerivationPlan(Handling.REENCODE, Handling.REENCODE, subtitle=subtitle)
    video = classify_video(meta.video_codec)
    audio = classify_audio(meta.audio_codec)
    return DerivationPlan(
        video=video,
        audio=audio,
        hevc_tag=video is Handling.COPY and is_hevc(meta.video_codec),
        surround=audio is Handling.REENCODE and (meta.audio_channels or 0) >= 6,
        subtitle=subtitle,
    )


def _video_args(handling: Handling, hevc_tag: bool, *, crf: int, preset: str, max_height: Optional[int]) -> list[str]:
    if handling is Handling.COPY:
        return ["-c:v", "copy", *(["-tag:v", "hvc1"] if hevc_tag else [])]
    args = ["-c:v", "libx264", "-preset", preset, "-crf", str(crf), "-pix_fmt", "yuv420p"]
    if max_height:
        args += ["-vf", f"scale=-2:'min({int(max_height)},ih)'"]
    return args


def _audio_args(plan: DerivationPlan, settings: EncodeSettings) -> list[str]:
    if plan.audio is Handling.COPY:
        return ["-c:a", "copy"]
    if plan.surround:
        return ["-c:a", "aac", "-ac", "6", "-b:a", settings.surround_bitrate]
    return ["-c:a", "aac", "-ac", "2", "-b:a", settings.aac_bitrate]


def build_remux_args(
    plan: DerivationPlan,
    source: Path,
    output: Path,
    settings: EncodeSettings,
    subtitle_path: Optional[Path] = None,
) -> list[str]:
    args = ["-err_detect", "ignore_err", "-i", str(source)]
    if subtitle_path is not None:
        args += ["-sub_charenc", "UTF-8", "-i", str(subtitle_path)]
    args += ["-map", "0:v:0", "-map", "0:a:0?"]
    if subtitle_path is not None:
        args += ["-map", "1:s:0"]
    args += _video_args(plan.video, plan.hevc_tag, crf=settings.crf, preset=settings.preset, max_height=settings.max_height)
    args += _audio_args(plan, settings)
    if subtitle_path is not None and plan.subtitle is not None:
        args += [
            "-c:s", "mov_text",
            "-metadata:s:s:0", f"language={iso639_2(plan.subtitle.lang)}",
            "-metadata:s:s:0", f"title={plan.subtitle.label}",
            "-disposition:s:0", "default",
        ]
    args += ["-movflags", "+faststart", "-f", "mp4", str(output)]
    return args


def build_live_args(
    meta: Optional[ProbedMetadata],
    source: Path,
    settings: EncodeSettings,
    *,
    force_transcode: bool = False,
) -> list[str]:
    """Fragmented MP4 to stdout for the non-cached playback path."""
    plan = plan_derivation(meta, None, settings)
    if force_transcode:
        plan = DerivationPlan(Handling.REENCODE, Handling.REENCODE, surround=plan.surround)
    offset = meta.start_offset if meta else 0.0
    args: list[str] = ["-err_detect", "ignore_err"]
    if abs(offset) > 0.0005:
        # delay whichever input starts later so the streams stay aligned
        args += ["-itsoffset", f"{abs(offset):.4f}", "-i", str(source), "-i", str(source)]
        if offset > 0:
            args += ["-map", "1:v:0", "-map", "0:a:0?"]
        else:
            args += ["-map", "0:v:0", "-map", "1:a:0?"]
    else:
        args += ["-i", str(source), "-map", "0:v:0", "-map", "0:a:0?"]
    if plan.video is Handling.COPY:
        args += _video_args(plan.video, plan.hevc_tag, crf=settings.live_crf, preset=settings.preset, max_height=None)
    else:
        args += _video_args(plan.video, False, crf=settings.live_crf, preset=settings.preset, max_height=settings.live_max_height)
        args += ["-tune", "fastdecode"]
    args += _audio_args(plan, settings)
    args += ["-movflags", "frag_keyframe+empty_moov+faststart", "-f", "mp4", "pipe:1"]
    return args


SubtitleFinder = Callable[[Path], list]


class DerivationEngine:
    def __init__(
        self,
        transcoder: Transcoder,
        settings: Optional[EncodeSettings] = None,
        *,
        find_subtitles: Optional[SubtitleFinder] = None,
        subtitle_cache_for: Optional[Callable[[str], SubtitleCache]] = None,
        progress_log_interval: float = 10.0,
    ):
        self.transcoder = transcoder
        self.settings = settings or EncodeSettings()
        self.find_subtitles = find_subtitles
        self.subtitle_cache_for = subtitle_cache_for
        self.progress_log_interval = progress_log_interval

    def _pick_subtitle(self, source: Path, rel_path: str) -> tuple[Optional[SubtitleTrack], Optional[Path]]:
        if self.find_subtitles is None:
            return None, None
        tracks = self.find_subtitles(source) or []
        for track in tracks:
            # image-less text formats only; vtt/srt/ass all map to mov_text
            try:
                if self.subtitle_cache_for is not None:
                    return track, self.subtitle_cache_for(rel_path).ensure_utf8(track.path)
                return track, track.path
            except OSError as exc:
                log("subs", f"[subs] skip unreadable subtitle path={track.path} err={exc}")
        return None, None

    def derive(
        self,
        source: Path,
        rel_path: str,
        metadata: Optional[ProbedMetadata],
        artifact: Artifact,
        progress: Optional[Callable[..., None]] = None,
    ) -> Artifact:
        track, sub_path = self._pick_subtitle(source, rel_path)
        plan = plan_derivation(metadata, track, self.settings)
        out = artifact.path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(f".{out.stem}.{uuid.uuid4().hex[:8]}.partial.mp4")
        duration = metadata.duration if metadata else None
        log("jobs", f"[derive] start path={rel_path} plan=({plan.describe()}) out={artifact.rel_path}")
        last_log = [0.0]

        def on_progress(percent: Optional[float], timemark: Optional[str]) -> None:
            if progress is not None:
                progress(percent=percent, timemark=timemark)
            now = time.monotonic()
            if now - last_log[0] >= self.progress_log_interval:
                last_log[0] = now
                pct = f"{percent:.1f}%" if percent is not None else "n/a"
                log("ffmpeg", f"[derive] progress path={rel_path} pct={pct} time={timemark}")

        t0 = time.time()
        try:
            self.transcoder.run(
                build_remux_args(plan, source, tmp, self.settings, sub_path),
                on_progress=on_progress,
                duration=duration,
            )
            if not tmp.is_file() or tmp.stat().st_size == 0:
                raise ProductionFailed(f"transcoder produced no output for {rel_path}")
            os.replace(tmp, out)
        except Exception as exc:
            try:
                tmp.unlink(missing_ok=True)
                if out.exists() and not _complete(out):
                    out.unlink(missing_ok=True)
            except OSError as cleanup_exc:
                log("jobs", f"[derive] cleanup failed path={rel_path} err={cleanup_exc}")
            if isinstance(exc, ProductionFailed):
                raise
            raise ProductionFailed(f"derivation failed for {rel_path}: {exc}") from exc
        log("jobs", f"[derive] end path={rel_path} elapsed={time.time() - t0:.1f}s size={out.stat().st_size}")
        return artifact


def _complete(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False

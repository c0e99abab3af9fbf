"""
Thin process wrapper around ffmpeg.

Everything that spawns ffmpeg goes through :class:`Transcoder` so live
processes can be tracked and killed on shutdown, and so tests can swap in a
fake with the same surface.
"""
from __future__ import annotations

import os
import re
import shutil
import signal
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Iterator, Optional

from .logs import log

_TIMEMARK = re.compile(r"^(?:(\d+):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")

ProgressCallback = Callable[[Optional[float], Optional[str]], None]


class TranscodeError(RuntimeError):
    def __init__(self, message: str, *, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def ffmpeg_available() -> bool:
    """Return True if an ffmpeg executable is available on PATH (or via FFMPEG env)."""
    return bool(os.environ.get("FFMPEG") or shutil.which("ffmpeg"))


def ffprobe_available() -> bool:
    return bool(os.environ.get("FFPROBE") or shutil.which("ffprobe"))


def parse_timemark(value: Optional[str]) -> Optional[float]:
    """Parse ``HH:MM:SS[.frac]`` (or ``MM:SS``) into seconds."""
    if not value:
        return None
    m = _TIMEMARK.match(str(value).strip())
    if not m:
        return None
    hh = int(m.group(1) or 0)
    mm = int(m.group(2))
    ss = float(m.group(3))
    return hh * 3600 + mm * 60 + ss


def percent_from_timemark(timemark: Optional[str], duration: Optional[float]) -> Optional[float]:
    secs = parse_timemark(timemark)
    if secs is None or not duration or duration <= 0:
        return None
    return max(0.0, min(100.0, secs / duration * 100.0))


def _kill_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError, OSError):
        try:
            if sig == signal.SIGKILL:
                proc.kill()
            else:
                proc.terminate()
        except OSError:
            pass


class Transcoder:
    def __init__(self, ffmpeg_bin: Optional[str] = None, *, timeout: Optional[float] = None):
        self.ffmpeg_bin = ffmpeg_bin or os.environ.get("FFMPEG") or "ffmpeg"
        self.timeout = timeout if timeout and timeout > 0 else None
        self._procs: set[subprocess.Popen] = set()
        self._lock = threading.Lock()

    def _track(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.add(proc)

    def _untrack(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.discard(proc)

    def live_count(self) -> int:
        with self._lock:
            return sum(1 for p in self._procs if p.poll() is None)

    def terminate_all(self, grace_seconds: float = 2.0) -> int:
        """TERM every live ffmpeg, then KILL whatever survives the grace period."""
        with self._lock:
            procs = [p for p in self._procs if p.poll() is None]
        for p in procs:
            _kill_group(p, signal.SIGTERM)
        deadline = time.time() + grace_seconds
        while procs and time.time() < deadline:
            if all(p.poll() is not None for p in procs):
                break
            time.sleep(0.1)
        for p in procs:
            if p.poll() is None:
                _kill_group(p, signal.SIGKILL)
        return len(procs)

    def run(
        self,
        args: list[str],
        *,
        on_progress: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
    ) -> None:
        """Run ffmpeg to completion, reporting ``-progress`` events.

        ffmpeg only reports a time marker; percent is derived from ``duration``
        when it is known and left as None otherwise.
        """
        cmd = [self.ffmpeg_bin, "-hide_banner", "-nostdin", "-y", "-progress", "pipe:1", "-nostats", *args]
        log("ffmpeg", f"[ffmpeg] exec {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as exc:
            raise TranscodeError(f"failed to start ffmpeg: {exc}") from exc
        self._track(proc)
        tail: deque[str] = deque(maxlen=40)

        def drain() -> None:
            assert proc.stderr is not None
            for line in proc.stderr:
                tail.append(line.rstrip())

        reader = threading.Thread(target=drain, name="ffmpeg-stderr", daemon=True)
        reader.start()
        timer: Optional[threading.Timer] = None
        timed_out = threading.Event()
        if self.timeout:
            def _expire() -> None:
                timed_out.set()
                _kill_group(proc, signal.SIGKILL)
            timer = threading.Timer(self.timeout, _expire)
            timer.daemon = True
            timer.start()
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                k, _, v = line.strip().partition("=")
                if k == "out_time" and on_progress is not None:
                    on_progress(percent_from_timemark(v, duration), v)
                elif k == "progress" and v == "end" and on_progress is not None:
                    on_progress(100.0, None)
            rc = proc.wait()
            reader.join(timeout=2.0)
        finally:
            if timer is not None:
                timer.cancel()
            if proc.poll() is None:
                _kill_group(proc, signal.SIGKILL)
                proc.wait()
            self._untrack(proc)
        stderr = "\n".join(tail)
        if timed_out.is_set():
            raise TranscodeError(f"ffmpeg timed out after {self.timeout}s", returncode=rc, stderr=stderr)
        if rc != 0:
            last = tail[-1] if tail else "no output"
            raise TranscodeError(f"ffmpeg exited with {rc}: {last}", returncode=rc, stderr=stderr)

    def stream(self, args: list[str], chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        """Yield stdout of a live ffmpeg. Stopping iteration kills the process."""
        cmd = [self.ffmpeg_bin, "-hide_banner", "-nostdin", "-v", "error", *args]
        log("ffmpeg", f"[ffmpeg] stream {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, start_new_session=True)
        except OSError as exc:
            raise TranscodeError(f"failed to start ffmpeg: {exc}") from exc
        self._track(proc)

        def _gen() -> Iterator[bytes]:
            try:
                assert proc.stdout is not None
                while True:
                    data = proc.stdout.read(chunk_size)
                    if not data:
                        break
                    yield data
                rc = proc.wait()
                if rc != 0:
                    log("ffmpeg", f"[ffmpeg] live transcode exited rc={rc}")
            finally:
                if proc.poll() is None:
                    _kill_group(proc, signal.SIGKILL)
                    proc.wait()
                self._untrack(proc)

        return _gen()

    def _capture(self, args: list[str], what: str) -> bytes:
        cmd = [self.ffmpeg_bin, "-hide_banner", "-nostdin", "-v", "error", *args]
        try:
            completed = subprocess.run(cmd, capture_output=True, timeout=self.timeout)
        except FileNotFoundError as exc:
            raise TranscodeError("ffmpeg executable was not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise TranscodeError(f"{what} timed out after {self.timeout}s") from exc
        if completed.returncode != 0:
            err = completed.stderr.decode("utf-8", "replace").strip()
            raise TranscodeError(f"{what} failed: {err[-400:]}", returncode=completed.returncode, stderr=err)
        return completed.stdout

    def extract_pcm(
        self,
        path: Path,
        *,
        sample_rate: int = 8000,
        start: Optional[float] = None,
        duration: Optional[float] = None,
    ) -> bytes:
        """Decode the first audio track to mono signed 16-bit little-endian PCM."""
        args: list[str] = []
        if start:
            args += ["-ss", f"{max(0.0, start):.3f}"]
        args += ["-i", str(path)]
        if duration:
            args += ["-t", f"{duration:.3f}"]
        args += ["-vn", "-map", "0:a:0", "-ac", "1", "-ar", str(int(sample_rate)), "-f", "s16le", "-acodec", "pcm_s16le", "pipe:1"]
        return self._capture(args, "pcm extraction")

    def convert_subtitle(self, path: Path, *, offset_seconds: float = 0.0) -> bytes:
        args: list[str] = []
        if offset_seconds:
            args += ["-itsoffset", f"{offset_seconds:.3f}"]
        args += ["-i", str(path), "-f", "webvtt", "pipe:1"]
        return self._capture(args, "subtitle conversion")

    def grab_frame(self, path: Path, out: Path, *, at: float = 10.0, width: int = 480) -> None:
        args = [
            "-y",
            "-ss", f"{max(0.0, at):.3f}",
            "-i", str(path),
            "-frames:v", "1",
            "-vf", f"scale='min({int(width)},iw)':-2",
            "-q:v", "4",
            str(out),
        ]
        self._capture(args, "frame grab")

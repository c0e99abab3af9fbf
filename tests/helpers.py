import threading
import time
from pathlib import Path

import numpy as np
from PIL import Image

from media.errors import ProductionFailed
from media.transcoder import TranscodeError


def make_theme(seconds: float, sample_rate: int, seed: int, *, frame_seconds: float = 0.25) -> np.ndarray:
    """Noise whose loudness jumps every frame: a recognisable energy envelope."""
    rng = np.random.default_rng(seed)
    per_frame = int(sample_rate * frame_seconds)
    amps = rng.uniform(0.1, 1.0, int(seconds / frame_seconds))
    env = np.repeat(amps, per_frame)
    return rng.standard_normal(env.size) * env * 0.3


def steady_noise(seconds: float, sample_rate: int, seed: int, level: float = 0.05) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.standard_normal(int(seconds * sample_rate)) * level


def to_pcm(samples: np.ndarray) -> bytes:
    return (np.clip(samples, -1.0, 0.9999) * 32767).astype("<i2").tobytes()


def write_video(path: Path, payload: bytes = b"0123456789") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return path


class FakeTranscoder:
    """Stands in for ffmpeg: writes the output file named by the last argument."""

    def __init__(self, *, payload: bytes = b"mp4-bytes", fail: bool = False, delay: float = 0.0):
        self.payload = payload
        self.fail = fail
        self.delay = delay
        self.runs: list[list[str]] = []
        self.pcm: dict[str, np.ndarray] = {}
        self.pcm_calls: list[tuple[str, float | None, float | None]] = []
        self.live: list[list[str]] = []
        self._lock = threading.Lock()

    def run(self, args, *, on_progress=None, duration=None):
        with self._lock:
            self.runs.append(list(args))
        out = Path(args[-1])
        if on_progress is not None:
            on_progress(50.0, "00:00:05.00")
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            # leave a partial file behind like a crashed ffmpeg would
            out.write_bytes(b"partial")
            raise TranscodeError("ffmpeg exited with 1: boom", returncode=1)
        out.write_bytes(self.payload)
        if on_progress is not None:
            on_progress(100.0, None)

    def extract_pcm(self, path, *, sample_rate=8000, start=None, duration=None):
        with self._lock:
            self.pcm_calls.append((Path(path).name, start, duration))
        samples = self.pcm.get(Path(path).name)
        if samples is None:
            raise TranscodeError("pcm extraction failed: no audio stream")
        lo = int((start or 0.0) * sample_rate)
        hi = len(samples) if duration is None else lo + int(duration * sample_rate)
        return to_pcm(samples[lo:hi])

    def stream(self, args, chunk_size=64 * 1024):
        self.live.append(list(args))
        return iter([b"frag-1", b"frag-2"])

    def convert_subtitle(self, path, *, offset_seconds=0.0):
        return b"WEBVTT\n\n00:00:01.000 --> 00:00:02.000\nconverted\n"

    def grab_frame(self, path, out, *, at=10.0, width=480):
        Image.new("RGB", (width * 2, width), color=(200, 10, 10)).save(out, format="JPEG")

    def terminate_all(self, grace_seconds=2.0):
        return 0

    def live_count(self):
        return 0


class FakeEngine:
    """Records derive calls and writes the artifact directly."""

    def __init__(self, *, delay: float = 0.0, fail_times: int = 0, settings=None):
        from media.derive import EncodeSettings

        self.delay = delay
        self.fail_times = fail_times
        self.calls = 0
        self.settings = settings or EncodeSettings()
        self._lock = threading.Lock()

    def derive(self, source, rel_path, metadata, artifact, progress=None):
        with self._lock:
            self.calls += 1
            fail = self.fail_times > 0
            if fail:
                self.fail_times -= 1
        if progress is not None:
            progress(percent=10.0)
        if self.delay:
            time.sleep(self.delay)
        if fail:
            raise ProductionFailed(f"derivation failed for {rel_path}")
        artifact.path.parent.mkdir(parents=True, exist_ok=True)
        artifact.path.write_bytes(b"derived:" + source.read_bytes())
        return artifact

"""
Single-flight job registry for derived artifacts.

The artifact on disk is the system of record: a readable file at its canonical
path means "done". The registry only coordinates producers in this process so
that at most one runs per cache key, and keeps a small observable history.
"""
from __future__ import annotations

import concurrent.futures
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

from .errors import ProductionFailed
from .locator import Artifact, CacheKey
from .logs import log

STAGES = ("queued", "running", "done", "error")
REASONS = ("on-demand", "background")


@dataclass
class DerivationJob:
    key: CacheKey
    rel_path: str
    reason: str = "on-demand"
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    stage: str = "queued"
    percent: Optional[float] = None
    timemark: Optional[str] = None
    queued_at: float = 0.0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    artifact: Optional[str] = None
    cached: bool = False

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "path": self.rel_path,
            "key": self.key.digest[:16],
            "reason": self.reason,
            "stage": self.stage,
            "percent": self.percent,
            "timemark": self.timemark,
            "queued_at": self.queued_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "artifact": self.artifact,
            "cached": self.cached,
        }


ProgressFn = Callable[..., None]
Producer = Callable[[ProgressFn], None]


class _Entry:
    __slots__ = ("job", "future")

    def __init__(self, job: DerivationJob):
        self.job = job
        self.future: concurrent.futures.Future = concurrent.futures.Future()


class JobRegistry:
    def __init__(self, *, history_max: int = 50, history_ttl: float = 3600.0, clock: Callable[[], float] = time.time):
        self.history_max = max(1, int(history_max))
        self.history_ttl = float(history_ttl)
        self._clock = clock
        self._lock = threading.Lock()
        self._active: dict[CacheKey, _Entry] = {}
        self._recent: Deque[DerivationJob] = deque()

    def ensure(
        self,
        key: CacheKey,
        artifact: Artifact,
        produce: Producer,
        *,
        rel_path: Optional[str] = None,
        reason: str = "on-demand",
    ) -> Artifact:
        """Return the artifact for ``key``, producing it at most once.

        The existence check and the in-flight check happen under the same lock,
        and a job leaves the active set only after the producer has promoted
        the artifact, so no caller can observe "missing and not running" for a
        key whose producer is still at work.
        """
        rel = rel_path or key.rel_path
        with self._lock:
            if artifact.exists():
                now = self._clock()
                done = DerivationJob(
                    key=key, rel_path=rel, reason=reason, stage="done", percent=100.0,
                    queued_at=now, started_at=now, finished_at=now,
                    artifact=artifact.rel_path, cached=True,
                )
                self._push_recent(done)
                return artifact
            entry = self._active.get(key)
            owner = entry is None
            if owner:
                entry = _Entry(DerivationJob(key=key, rel_path=rel, reason=reason, queued_at=self._clock()))
                self._active[key] = entry
        assert entry is not None
        if not owner:
            log("jobs", f"[jobs] wait jid={entry.job.id} path={rel} reason={reason}")
            try:
                entry.future.result()
            except ProductionFailed:
                raise
            except Exception as exc:  # noqa: BLE001
                raise ProductionFailed(str(exc)) from exc
            return artifact
        return self._run(entry, artifact, produce)

    def _run(self, entry: _Entry, artifact: Artifact, produce: Producer) -> Artifact:
        job = entry.job
        with self._lock:
            job.stage = "running"
            job.started_at = self._clock()
        log("jobs", f"[jobs] start jid={job.id} path={job.rel_path} reason={job.reason}")

        def progress(percent: Optional[float] = None, timemark: Optional[str] = None) -> None:
            with self._lock:
                if percent is not None:
                    job.percent = max(0.0, min(100.0, float(percent)))
                if timemark is not None:
                    job.timemark = str(timemark)

        try:
            produce(progress)
            if not artifact.exists():
                raise ProductionFailed(f"producer finished without output: {artifact.rel_path}")
        except BaseException as exc:
            failure = exc if isinstance(exc, ProductionFailed) else ProductionFailed(str(exc) or type(exc).__name__)
            with self._lock:
                job.stage = "error"
                job.error = str(failure)
                job.finished_at = self._clock()
                self._active.pop(job.key, None)
                self._push_recent(job)
            entry.future.set_exception(failure)
            log("jobs", f"[jobs] error jid={job.id} path={job.rel_path} err={failure}")
            if failure is exc or not isinstance(exc, Exception):
                raise
            raise failure from exc
        with self._lock:
            job.stage = "done"
            job.percent = 100.0
            job.artifact = artifact.rel_path
            job.finished_at = self._clock()
            self._active.pop(job.key, None)
            self._push_recent(job)
        entry.future.set_result(artifact)
        log("jobs", f"[jobs] done jid={job.id} path={job.rel_path} elapsed={job.finished_at - (job.started_at or job.finished_at):.1f}s")
        return artifact

    def _push_recent(self, job: DerivationJob) -> None:
        # caller holds self._lock
        self._recent.append(job)
        self._trim()

    def _trim(self) -> None:
        while len(self._recent) > self.history_max:
            self._recent.popleft()
        cutoff = self._clock() - self.history_ttl
        while self._recent and (self._recent[0].finished_at or 0.0) < cutoff:
            self._recent.popleft()

    def status(self) -> dict:
        with self._lock:
            self._trim()
            active = [e.job.snapshot() for e in self._active.values()]
            recent = [j.snapshot() for j in reversed(self._recent)]
        return {"active": active, "recent": recent}

    def is_active(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._active

    def active_count(self, reason: Optional[str] = None) -> int:
        with self._lock:
            if reason is None:
                return len(self._active)
            return sum(1 for e in self._active.values() if e.job.reason == reason)

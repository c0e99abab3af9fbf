from __future__ import annotations

import concurrent.futures as cf
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from media.catalog import episode_sort_key
from media.logs import log

logger = logging.getLogger(__name__)


class Preconverter:
    """
    Background worker that periodically derives seekable copies for every
    source that still needs one, so playback later hits the cache.

    The host app supplies the behaviour through injected callables; the
    worker only decides when and how many at a time. Submitted work goes
    through the same job registry as on-demand requests, so a file that a
    viewer is already waiting on is never converted twice.
    """

    def __init__(
        self,
        *,
        conf_getter: Callable[[], Any],
        list_sources: Callable[[], List[str]],
        is_ready: Callable[[str], bool],
        submit: Callable[[str], Any],
    ) -> None:
        self._conf_getter = conf_getter
        self._list_sources = list_sources
        self._is_ready = is_ready
        self._submit = submit
        self._stop = threading.Event()
        self._th: Optional[threading.Thread] = None
        self._pass_lock = threading.Lock()
        self.last_pass: Dict[str, int] = {}

    def start(self) -> None:
        if self._th and self._th.is_alive():
            return
        self._stop.clear()
        t = threading.Thread(target=self._loop, name="preconverter", daemon=True)
        self._th = t
        t.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        th = self._th
        if timeout is not None and th is not None and th is not threading.current_thread():
            th.join(timeout)

    def is_running(self) -> bool:
        return bool(self._th and self._th.is_alive())

    def _conf(self) -> Dict[str, Any]:
        conf = self._conf_getter()
        if hasattr(conf, "model_dump"):
            return conf.model_dump()
        return dict(conf or {})

    def pending(self, sources: Optional[List[str]] = None) -> List[str]:
        """Sources without an artifact, in episode order."""
        out: List[str] = []
        for rel in sorted(self._list_sources() if sources is None else sources, key=episode_sort_key):
            try:
                if not self._is_ready(rel):
                    out.append(rel)
            except Exception:  # noqa: BLE001
                logger.exception("readiness check failed for %s", rel)
        return out

    def run_once(self) -> Dict[str, int]:
        """One synchronous pass. Returns counts of converted/failed/skipped items."""
        if not self._pass_lock.acquire(blocking=False):
            log("preconvert", "[preconvert] pass already running, skipped")
            return {"converted": 0, "failed": 0, "skipped": 0}
        try:
            return self._pass()
        finally:
            self._pass_lock.release()

    def _pass(self) -> Dict[str, int]:
        conf = self._conf()
        max_conc = max(1, int(conf.get("max_concurrent", 1) or 1))
        try:
            sources = self._list_sources()
        except Exception:  # noqa: BLE001
            logger.exception("listing sources failed")
            return {"converted": 0, "failed": 0, "skipped": 0}
        todo = self.pending(sources)
        counts = {"converted": 0, "failed": 0, "skipped": len(sources) - len(todo)}
        if not todo:
            self.last_pass = counts
            return counts
        log("preconvert", f"[preconvert] pass start pending={len(todo)} concurrency={max_conc}")

        def one(rel: str) -> str:
            if self._stop.is_set():
                return "skipped"
            # a viewer may have triggered it since the pass was listed
            if self._is_ready(rel):
                return "skipped"
            self._submit(rel)
            return "converted"

        with cf.ThreadPoolExecutor(max_workers=max_conc, thread_name_prefix="preconvert") as ex:
            futs = {ex.submit(one, rel): rel for rel in todo}
            for fut in cf.as_completed(futs):
                rel = futs[fut]
                try:
                    counts[fut.result()] += 1
                except Exception as exc:  # noqa: BLE001
                    counts["failed"] += 1
                    log("preconvert", f"[preconvert] failed path={rel} err={exc}", logging.WARNING)
        log("preconvert", f"[preconvert] pass end {counts}")
        self.last_pass = counts
        return counts

    def _loop(self) -> None:
        conf = self._conf()
        delay = float(conf.get("startup_delay_seconds", 30.0) or 0.0)
        if self._stop.wait(delay):
            return
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("preconvert pass crashed")
            interval = max(1.0, float(self._conf().get("interval_seconds", 600.0) or 600.0))
            self._stop.wait(interval)

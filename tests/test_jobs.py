import threading
import time

import pytest

from media.errors import ProductionFailed
from media.jobs import JobRegistry
from media.locator import ArtifactLocator


def _setup(tmp_path, rel="Show/ep1.mkv"):
    loc = ArtifactLocator(tmp_path, version=2)
    key = loc.key_for(rel, 100, 1_000)
    return key, loc.artifact_for(key)


def _writer(artifact, counter, *, delay=0.0):
    def produce(progress):
        counter.append(1)
        progress(percent=42.0, timemark="00:00:01.00")
        if delay:
            time.sleep(delay)
        artifact.path.parent.mkdir(parents=True, exist_ok=True)
        artifact.path.write_bytes(b"ok")
    return produce


def test_concurrent_requests_share_one_producer(tmp_path):
    reg = JobRegistry()
    key, art = _setup(tmp_path)
    calls = []
    produce = _writer(art, calls, delay=0.2)
    results, errors = [], []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        try:
            results.append(reg.ensure(key, art, produce))
        except Exception as exc:  # pragma: no cover - surfaced by assert below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)
    assert not errors
    assert len(calls) == 1
    assert len(results) == 8
    assert all(r == art for r in results)
    assert art.path.read_bytes() == b"ok"
    assert reg.status()["active"] == []


def test_existing_artifact_is_returned_without_producing(tmp_path):
    reg = JobRegistry()
    key, art = _setup(tmp_path)
    art.path.parent.mkdir(parents=True)
    art.path.write_bytes(b"already")
    calls = []
    assert reg.ensure(key, art, _writer(art, calls)) == art
    assert calls == []
    recent = reg.status()["recent"]
    assert recent[0]["cached"] is True
    assert recent[0]["stage"] == "done"


def test_second_call_after_success_is_a_cache_hit(tmp_path):
    reg = JobRegistry()
    key, art = _setup(tmp_path)
    calls = []
    reg.ensure(key, art, _writer(art, calls))
    reg.ensure(key, art, _writer(art, calls))
    assert len(calls) == 1


def test_failure_clears_active_and_allows_retry(tmp_path):
    reg = JobRegistry()
    key, art = _setup(tmp_path)

    def boom(progress):
        raise RuntimeError("ffmpeg crashed")

    with pytest.raises(ProductionFailed) as ei:
        reg.ensure(key, art, boom)
    assert "ffmpeg crashed" in str(ei.value)
    assert not reg.is_active(key)
    snap = reg.status()
    assert snap["active"] == []
    assert snap["recent"][0]["stage"] == "error"

    calls = []
    assert reg.ensure(key, art, _writer(art, calls)) == art
    assert len(calls) == 1


def test_waiters_see_the_owners_failure(tmp_path):
    reg = JobRegistry()
    key, art = _setup(tmp_path)
    started = threading.Event()
    release = threading.Event()

    def slow_fail(progress):
        started.set()
        release.wait(5)
        raise ProductionFailed("bad input")

    outcomes = []

    def run():
        try:
            reg.ensure(key, art, slow_fail)
            outcomes.append("ok")
        except ProductionFailed as exc:
            outcomes.append(str(exc))

    owner = threading.Thread(target=run)
    owner.start()
    assert started.wait(5)
    waiter = threading.Thread(target=run)
    waiter.start()
    time.sleep(0.05)
    release.set()
    owner.join(5)
    waiter.join(5)
    assert outcomes == ["bad input", "bad input"]


def test_producer_without_output_counts_as_failure(tmp_path):
    reg = JobRegistry()
    key, art = _setup(tmp_path)
    with pytest.raises(ProductionFailed):
        reg.ensure(key, art, lambda progress: None)
    assert reg.status()["recent"][0]["stage"] == "error"


def test_progress_is_visible_while_running(tmp_path):
    reg = JobRegistry()
    key, art = _setup(tmp_path)
    seen = threading.Event()
    release = threading.Event()

    def produce(progress):
        progress(percent=150.0, timemark="00:01:00.00")
        seen.set()
        release.wait(5)
        art.path.parent.mkdir(parents=True, exist_ok=True)
        art.path.write_bytes(b"x")

    t = threading.Thread(target=reg.ensure, args=(key, art, produce), kwargs={"reason": "background"})
    t.start()
    assert seen.wait(5)
    active = reg.status()["active"]
    assert len(active) == 1
    assert active[0]["stage"] == "running"
    assert active[0]["percent"] == 100.0
    assert active[0]["timemark"] == "00:01:00.00"
    assert reg.active_count("background") == 1
    assert reg.active_count("on-demand") == 0
    release.set()
    t.join(5)
    assert reg.active_count() == 0


def test_history_is_bounded_by_count_and_age(tmp_path):
    now = [1000.0]
    reg = JobRegistry(history_max=3, history_ttl=60.0, clock=lambda: now[0])
    loc = ArtifactLocator(tmp_path, version=2)
    for i in range(5):
        key = loc.key_for(f"ep{i}.mkv", 10, i)
        art = loc.artifact_for(key)
        reg.ensure(key, art, _writer(art, []))
    recent = reg.status()["recent"]
    assert [r["path"] for r in recent] == ["ep4.mkv", "ep3.mkv", "ep2.mkv"]
    now[0] += 120.0
    assert reg.status()["recent"] == []

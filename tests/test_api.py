import threading

from PIL import Image

from helpers import FakeEngine, FakeTranscoder, make_theme, steady_noise, write_video


def test_health_and_config(client, media_root):
    r = client.get("/api/health")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["root"] == str(media_root.resolve())
    assert body["preconverter"] is False
    cfg = client.get("/api/config").json()["data"]
    assert cfg["cache_version"] == 2
    assert cfg["preconvert"]["enabled"] is False
    assert (media_root / ".cache").is_dir()


def test_videos_listing(client, media_root):
    write_video(media_root / "Show" / "Show.S01E01.mkv")
    write_video(media_root / "film.mp4")
    data = client.get("/api/videos").json()["data"]
    assert data["count"] == 2
    by_rel = {i["relPath"]: i for i in data["items"]}
    assert by_rel["Show/Show.S01E01.mkv"]["cached"] is False
    assert "cached" not in by_rel["film.mp4"]
    assert by_rel["film.mp4"]["duration"] is None
    assert {g["name"] for g in data["categories"]} == {"Show", "Uncategorized"}


def test_videos_listing_survives_unrunnable_ffprobe(client, media_root, monkeypatch, tmp_path):
    fake_bin = tmp_path / "ffprobe"
    fake_bin.write_text("not a program")
    fake_bin.chmod(0o644)
    monkeypatch.delenv("FFPROBE_DISABLE", raising=False)
    monkeypatch.setenv("FFPROBE", str(fake_bin))
    write_video(media_root / "film.mp4")
    r = client.get("/api/videos")
    assert r.status_code == 200
    assert r.json()["data"]["items"][0]["duration"] is None


def test_remux_derives_once_and_redirects_to_artifact(app_module, client, media_root):
    engine = FakeEngine(delay=0.2)
    app_module.STATE["engine"] = engine
    write_video(media_root / "Show" / "ep1.mkv", b"payload")
    artifacts = []

    def hit():
        artifacts.append(app_module.ensure_artifact("Show/ep1.mkv"))

    threads = [threading.Thread(target=hit) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert engine.calls == 1
    assert len(artifacts) == 4
    assert len({a.path for a in artifacts}) == 1

    r = client.get("/api/remux", params={"path": "Show/ep1.mkv"}, follow_redirects=False)
    assert r.status_code == 302
    location = r.headers["location"]
    assert location == f"/api/stream?path={artifacts[0].rel_path}"
    assert location.startswith("/api/stream?path=Show/.cache/ep1-")
    assert engine.calls == 1

    r = client.get(location)
    assert r.status_code == 200
    assert r.content == b"derived:payload"

    jobs = client.get("/api/jobs/status").json()["data"]
    assert jobs["active"] == []
    assert any(j["stage"] == "done" and not j["cached"] for j in jobs["recent"])


def test_remux_after_source_change_uses_new_key(app_module, client, media_root):
    engine = FakeEngine()
    app_module.STATE["engine"] = engine
    src = write_video(media_root / "Show" / "ep1.mkv", b"one")
    first = client.get("/api/remux", params={"path": "Show/ep1.mkv"}, follow_redirects=False).headers["location"]
    src.write_bytes(b"second version")
    second = client.get("/api/remux", params={"path": "Show/ep1.mkv"}, follow_redirects=False).headers["location"]
    assert first != second
    assert engine.calls == 2


def test_remux_failure_is_500_and_retryable(app_module, client, media_root):
    engine = FakeEngine(fail_times=1)
    app_module.STATE["engine"] = engine
    write_video(media_root / "Show" / "ep1.mkv")
    r = client.get("/api/remux", params={"path": "Show/ep1.mkv"}, follow_redirects=False)
    assert r.status_code == 500
    assert r.json()["status"] == "error"
    assert client.get("/api/jobs/status").json()["data"]["active"] == []
    r = client.get("/api/remux", params={"path": "Show/ep1.mkv"}, follow_redirects=False)
    assert r.status_code == 302
    assert engine.calls == 2


def test_remux_missing_or_escaping_is_404(client, media_root):
    assert client.get("/api/remux", params={"path": "nope.mkv"}).status_code == 404
    assert client.get("/api/remux", params={"path": "../../etc/passwd"}).status_code == 404


def test_play_native_redirects_and_live_streams(app_module, client, media_root, monkeypatch):
    write_video(media_root / "film.mp4")
    r = client.get("/api/play", params={"path": "film.mp4"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/api/stream?path=film.mp4"

    fake = FakeTranscoder()
    app_module.STATE["transcoder"] = fake
    monkeypatch.setattr(app_module, "ffmpeg_available", lambda: True)
    write_video(media_root / "Show" / "ep1.mkv")
    r = client.get("/api/play", params={"path": "Show/ep1.mkv"})
    assert r.status_code == 200
    assert r.content == b"frag-1frag-2"
    assert r.headers["content-type"] == "video/mp4"
    assert fake.live[0][-1] == "pipe:1"


def test_play_prefers_cached_artifact(app_module, client, media_root):
    app_module.STATE["engine"] = FakeEngine()
    write_video(media_root / "Show" / "ep1.mkv")
    loc = client.get("/api/remux", params={"path": "Show/ep1.mkv"}, follow_redirects=False).headers["location"]
    r = client.get("/api/play", params={"path": "Show/ep1.mkv"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == loc


def test_subtitle_listing_and_shifted_vtt(client, media_root):
    write_video(media_root / "Show" / "Show.S01E01.mkv")
    (media_root / "Show" / "Show.S01E01.en.vtt").write_text(
        "WEBVTT\n\n00:00:01.000 --> 00:00:02.000\nhello\n", encoding="utf-8"
    )
    tracks = client.get("/api/subs", params={"path": "Show/Show.S01E01.mkv"}).json()["data"]["tracks"]
    assert tracks == [{"file": "Show.S01E01.en.vtt", "lang": "en", "label": "English"}]
    r = client.get("/api/sub", params={"path": "Show/Show.S01E01.mkv", "f": "Show.S01E01.en.vtt", "offset_ms": 500})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/vtt")
    assert "00:00:01.500 --> 00:00:02.500" in r.text
    missing = client.get("/api/sub", params={"path": "Show/Show.S01E01.mkv", "f": "../../secret.vtt"})
    assert missing.status_code == 404


def test_manual_skip_intro_and_next_episode(client, media_root):
    write_video(media_root / "Show" / "ep1.mkv")
    (media_root / "Show" / ".skipintro").write_text("start: 00:10\nend: 01:20\n")
    (media_root / ".nextepisode").write_text("next = -00:40\n")
    data = client.get("/api/skipintro", params={"path": "Show/ep1.mkv"}).json()["data"]
    assert data == {"start": 10.0, "end": 80.0, "source": "manual"}
    nxt = client.get("/api/nextepisode", params={"path": "Show/ep1.mkv"}).json()["data"]
    assert nxt["offset"] == -40.0
    assert nxt["at"] is None


def test_detected_intro_via_api(app_module, client, media_root):
    sr = app_module.STATE["detector"].settings.sample_rate
    fake = FakeTranscoder()
    app_module.STATE["transcoder"] = fake
    theme = make_theme(20.0, sr, seed=11)
    episode = steady_noise(90.0, sr, seed=12)
    at = int(30.0 * sr)
    episode[at:at + theme.size] += theme * 0.5
    fake.pcm["intro.mp3"] = theme
    fake.pcm["Show.S01E01.mkv"] = episode
    (media_root / "Show" / "intro.mp3").write_bytes(b"ref")
    write_video(media_root / "Show" / "Show.S01E01.mkv")

    r = client.post("/api/intro/detect", params={"path": "Show/Show.S01E01.mkv"})
    assert r.status_code == 200
    verdict = r.json()["data"]
    assert verdict["status"] == "ok"
    assert abs(verdict["start"] - 30.0) <= 0.25

    data = client.get("/api/skipintro", params={"path": "Show/Show.S01E01.mkv"}).json()["data"]
    assert data["source"] == "detected"
    assert abs(data["end"] - 50.0) <= 0.25

    outro = client.post("/api/intro/detect", params={"path": "Show/Show.S01E01.mkv", "kind": "outro"}).json()["data"]
    assert outro["status"] == "unreferenced"
    assert client.post("/api/intro/detect", params={"path": "Show/Show.S01E01.mkv", "kind": "credits"}).status_code == 422


def test_thumbnail_prefers_sibling_then_generates(app_module, client, media_root, monkeypatch):
    write_video(media_root / "Show" / "ep1.mkv")
    Image.new("RGB", (8, 8)).save(media_root / "Show" / "ep1.jpg")
    r = client.get("/api/thumb", params={"path": "Show/ep1.mkv"})
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/jpeg"

    write_video(media_root / "Show" / "ep2.mkv")
    app_module.STATE["transcoder"] = FakeTranscoder()
    monkeypatch.setattr("media.thumbs.ffmpeg_available", lambda: True)
    r = client.get("/api/thumb", params={"path": "Show/ep2.mkv"})
    assert r.status_code == 200
    generated = list((media_root / "Show" / ".cache" / "thumbs").glob("*.jpg"))
    assert len(generated) == 1
    with Image.open(generated[0]) as img:
        assert img.width == 480


def test_thumbnail_for_vanished_source_is_404(app_module, client, media_root, monkeypatch):
    write_video(media_root / "Show" / "ep3.mkv")

    def vanished(source, rel):
        raise FileNotFoundError(2, "No such file or directory", str(source))

    monkeypatch.setattr(app_module.STATE["locator"], "key_for_file", vanished)
    r = client.get("/api/thumb", params={"path": "Show/ep3.mkv"})
    assert r.status_code == 404
    assert r.json()["status"] == "error"

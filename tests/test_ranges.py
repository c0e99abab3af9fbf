import pytest

from helpers import write_video
from media.errors import NotFound, RangeUnsatisfiable
from media.ranges import parse_range, resolve_under_root

DATA = bytes(range(256)) * 8  # 2048 bytes


@pytest.mark.parametrize(
    "header,expected",
    [
        ("bytes=0-99", (0, 99)),
        ("bytes=100-", (100, 2047)),
        ("bytes=2000-5000", (2000, 2047)),
        ("bytes=-48", (2000, 2047)),
        ("bytes=-99999", (0, 2047)),
        ("bytes=2047-2047", (2047, 2047)),
    ],
)
def test_parse_range_valid(header, expected):
    assert parse_range(header, len(DATA)) == expected


@pytest.mark.parametrize(
    "header",
    ["bytes=abc-", "bytes=10-5", "bytes=2048-", "bytes=0-1,5-9", "items=0-5", "bytes=-0", "bytes=5"],
)
def test_parse_range_unsatisfiable(header):
    with pytest.raises(RangeUnsatisfiable) as ei:
        parse_range(header, len(DATA))
    assert ei.value.size == len(DATA)


def test_resolve_rejects_escapes_like_missing_files(tmp_path):
    (tmp_path / "outside.mp4").write_bytes(b"x")
    root = tmp_path / "root"
    root.mkdir()
    with pytest.raises(NotFound) as escape:
        resolve_under_root(root, "../outside.mp4")
    assert str(escape.value) == str(NotFound())
    with pytest.raises(NotFound):
        resolve_under_root(root, "")
    assert resolve_under_root(root, "sub/../ok.mp4") == root.resolve() / "ok.mp4"


def test_full_body(client, media_root):
    write_video(media_root / "Show" / "a.mp4", DATA)
    r = client.get("/api/stream", params={"path": "Show/a.mp4"})
    assert r.status_code == 200
    assert r.content == DATA
    assert r.headers["accept-ranges"] == "bytes"
    assert r.headers["content-length"] == str(len(DATA))
    assert r.headers["content-type"].startswith("video/mp4")
    assert r.headers["cache-control"] == "no-store"


def test_partial_window_matches_file_bytes(client, media_root):
    write_video(media_root / "Show" / "a.webm", DATA)
    r = client.get("/api/stream", params={"path": "Show/a.webm"}, headers={"Range": "bytes=100-199"})
    assert r.status_code == 206
    assert r.content == DATA[100:200]
    assert r.headers["content-range"] == f"bytes 100-199/{len(DATA)}"
    assert r.headers["content-length"] == "100"
    assert r.headers["content-type"].startswith("video/webm")


def test_open_ended_and_clamped_ranges(client, media_root):
    write_video(media_root / "a.mp4", DATA)
    r = client.get("/api/stream", params={"path": "a.mp4"}, headers={"Range": "bytes=2000-99999"})
    assert r.status_code == 206
    assert r.content == DATA[2000:]
    assert r.headers["content-range"] == f"bytes 2000-2047/{len(DATA)}"


def test_unsatisfiable_range_is_416(client, media_root):
    write_video(media_root / "a.mp4", DATA)
    for header in ("bytes=4096-", "bytes=9-3", "bytes=x-y"):
        r = client.get("/api/stream", params={"path": "a.mp4"}, headers={"Range": header})
        assert r.status_code == 416
        assert r.headers["content-range"] == f"bytes */{len(DATA)}"


def test_missing_and_escaping_paths_are_404(client, media_root):
    (media_root.parent / "secret.mp4").write_bytes(b"x")
    missing = client.get("/api/stream", params={"path": "nope.mp4"})
    escape = client.get("/api/stream", params={"path": "../secret.mp4"})
    assert missing.status_code == 404
    assert escape.status_code == 404
    assert missing.json() == escape.json()


def test_missing_path_parameter_is_422(client):
    assert client.get("/api/stream").status_code == 422

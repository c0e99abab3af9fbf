"""HTTP byte-range serving for sources and cached artifacts."""
from __future__ import annotations

from pathlib import Path
from typing import Iterator, Optional

from starlette.requests import Request
from starlette.responses import Response, StreamingResponse

from .catalog import guess_mime
from .errors import NotFound, RangeUnsatisfiable
from .logs import log

CHUNK_SIZE = 1024 * 1024


def resolve_under_root(root: Path, rel: str) -> Path:
    """Join ``rel`` onto ``root``; escapes look exactly like missing files."""
    root = Path(root).resolve()
    if not rel or "\x00" in rel:
        raise NotFound()
    p = (root / rel).resolve()
    try:
        p.relative_to(root)
    except ValueError:
        raise NotFound() from None
    return p


def parse_range(header: str, size: int) -> tuple[int, int]:
    """Parse a single ``bytes=`` range into inclusive (start, end)."""
    try:
        unit, _, spec = header.strip().partition("=")
        if unit.strip().lower() != "bytes" or "," in spec:
            raise ValueError(header)
        start_s, sep, end_s = spec.strip().partition("-")
        if not sep:
            raise ValueError(header)
        start_s, end_s = start_s.strip(), end_s.strip()
        if not start_s:
            # suffix range: last N bytes
            n = int(end_s)
            if n <= 0 or size == 0:
                raise ValueError(header)
            return max(0, size - n), size - 1
        start = int(start_s)
        end = int(end_s) if end_s else size - 1
    except ValueError:
        raise RangeUnsatisfiable(size) from None
    if start < 0 or start > end or start >= size:
        raise RangeUnsatisfiable(size)
    return start, min(end, size - 1)


def iter_file(path: Path, start: int, end: int, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    with open(path, "rb") as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = f.read(min(chunk_size, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


def serve_range(request: Request, file_path: Path, media_type: Optional[str] = None) -> Response:
    try:
        st = file_path.stat()
    except OSError:
        raise NotFound() from None
    if not file_path.is_file():
        raise NotFound()
    size = st.st_size
    mt = media_type or guess_mime(file_path)
    headers = {
        "Accept-Ranges": "bytes",
        "Cache-Control": "no-store",
    }
    range_header = request.headers.get("range")
    if not range_header:
        headers["Content-Length"] = str(size)
        log("range", f"[range][200] path={file_path.name} size={size} ct={mt}")
        return StreamingResponse(iter_file(file_path, 0, size - 1), status_code=200, headers=headers, media_type=mt)
    try:
        start, end = parse_range(range_header, size)
    except RangeUnsatisfiable as exc:
        log("range", f"[range][416] path={file_path.name} range={range_header!r} size={size}")
        return Response(
            status_code=416,
            headers={"Content-Range": f"bytes */{exc.size}", "Cache-Control": "no-store", "Accept-Ranges": "bytes"},
        )
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(end - start + 1)
    log("range", f"[range][206] path={file_path.name} {start}-{end}/{size}")
    return StreamingResponse(iter_file(file_path, start, end), status_code=206, headers=headers, media_type=mt)

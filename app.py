from __future__ import annotations
import os
import time
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

from fastapi import FastAPI, APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, FileResponse, RedirectResponse
from starlette.responses import Response, StreamingResponse

from media.catalog import group_by_category, walk
from media.config import ServerConfig, load_config
from media.derive import DerivationEngine, EncodeSettings, build_live_args, needs_derivation
from media.errors import MediaError, NotFound, ProductionFailed, RangeUnsatisfiable
from media.intro import STORE_FILENAME, DetectorSettings, IntroDetector, find_reference
from media.jobs import JobRegistry
from media.locator import Artifact, ArtifactLocator, CacheKey
from media.logs import configure_logging, log
from media.markers import find_next_episode, find_skip_intro, next_episode_at
from media.probe import ProbeCache
from media.ranges import resolve_under_root, serve_range
from media.subtitles import SubtitleCache, find_subtitles, shift_webvtt
from media.thumbs import ensure_thumbnail, find_thumbnail
from media.transcoder import TranscodeError, Transcoder, ffmpeg_available, ffprobe_available
from tools.preconverter import Preconverter

configure_logging()
logger = logging.getLogger(__name__)

# Global server state. Routes read collaborators from here at call time so
# tests (and the CLI) can swap them after import.
STATE: Dict[str, Any] = {}


def configure(cfg: Optional[ServerConfig] = None) -> ServerConfig:
    """(Re)build every collaborator from ``cfg`` (default: env + MEDIA_CONFIG)."""
    cfg = cfg or load_config()
    root = cfg.root
    locator = ArtifactLocator(root, version=cfg.cache_version, cache_dirname=cfg.cache_dirname)
    transcoder = Transcoder(timeout=cfg.jobs.ffmpeg_timelimit or None)
    probes = ProbeCache()
    engine = DerivationEngine(
        transcoder,
        EncodeSettings.from_config(cfg.encode),
        find_subtitles=find_subtitles,
        subtitle_cache_for=lambda rel: SubtitleCache(locator.scope_dir_for(rel) / "subs"),
    )

    def _duration_of(p: Path) -> Optional[float]:
        meta = STATE["probes"].get(p)
        return meta.duration if meta else None

    detector = IntroDetector(
        store_path_for=lambda rel: locator.scope_dir_for(rel) / STORE_FILENAME,
        resolve_reference=lambda src, kind: find_reference(src, root, kind),
        load_pcm=lambda p, **kw: STATE["transcoder"].extract_pcm(p, **kw),
        duration_of=_duration_of,
        settings=DetectorSettings.from_config(cfg.intro),
    )
    STATE.update(
        config=cfg,
        root=root,
        locator=locator,
        transcoder=transcoder,
        probes=probes,
        engine=engine,
        registry=JobRegistry(history_max=cfg.jobs.history_max, history_ttl=cfg.jobs.history_ttl_seconds),
        detector=detector,
    )
    STATE["preconverter"] = Preconverter(
        conf_getter=lambda: STATE["config"].preconvert,
        list_sources=list_derivable_sources,
        is_ready=artifact_ready,
        submit=lambda rel: ensure_artifact(rel, reason="background"),
    )
    return cfg


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def api_error(message: str, status_code: int = 400, data=None):
    return JSONResponse({"status": "error", "message": message, "data": data}, status_code=status_code)


def raise_api_error(message: str, status_code: int = 400, data=None):
    raise HTTPException(status_code=status_code, detail={"status": "error", "message": message, "data": data})


def _require_ffmpeg_or_error(task_name: str) -> None:
    if not ffmpeg_available():
        raise_api_error(
            f"ffmpeg is required for {task_name}. Please install ffmpeg and try again.",
            status_code=400,
            data={"ffmpeg": False},
        )


############################
# Core operations
############################

def resolve_source(rel: str) -> Path:
    p = resolve_under_root(STATE["root"], rel)
    if not p.is_file():
        raise NotFound()
    return p


def _normalize_rel(source: Path) -> str:
    return source.relative_to(STATE["root"]).as_posix()


def key_for_source(source: Path, rel: str) -> CacheKey:
    locator: ArtifactLocator = STATE["locator"]
    try:
        return locator.key_for_file(source, rel)
    except OSError:
        raise NotFound() from None


def artifact_for_source(source: Path, rel: str) -> Artifact:
    return STATE["locator"].artifact_for(key_for_source(source, rel))


def ensure_artifact(rel: str, *, reason: str = "on-demand") -> Artifact:
    """Return the seekable MP4 for ``rel``, deriving it at most once per cache key."""
    source = resolve_source(rel)
    rel = _normalize_rel(source)
    key = key_for_source(source, rel)
    artifact = STATE["locator"].artifact_for(key)

    def produce(progress):
        meta = STATE["probes"].get(source)
        STATE["engine"].derive(source, rel, meta, artifact, progress)

    return STATE["registry"].ensure(key, artifact, produce, rel_path=rel, reason=reason)


def artifact_ready(rel: str) -> bool:
    """True when the artifact exists or a producer for it is already running."""
    try:
        source = resolve_source(rel)
        locator: ArtifactLocator = STATE["locator"]
        key = locator.key_for_file(source, rel)
    except (NotFound, OSError):
        # vanished since listing; nothing to do
        return True
    return locator.artifact_for(key).exists() or STATE["registry"].is_active(key)


def list_derivable_sources() -> list[str]:
    cfg: ServerConfig = STATE["config"]
    return [s.rel_path for s in walk(STATE["root"], require_marker=cfg.require_include_marker) if needs_derivation(s.ext)]


def _stream_url(rel: str) -> str:
    return f"/api/stream?path={quote(rel)}"


configure()

app = FastAPI(title="Media Server", version="2.0")
api = APIRouter(prefix="/api")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and exc.detail.get("status") == "error":
        payload = exc.detail
        return JSONResponse(payload, status_code=exc.status_code)
    return JSONResponse({"status": "error", "message": str(exc.detail)}, status_code=exc.status_code)


@app.exception_handler(RangeUnsatisfiable)
async def range_exception_handler(request: Request, exc: RangeUnsatisfiable):
    return Response(status_code=416, headers={"Content-Range": f"bytes */{exc.size}", "Accept-Ranges": "bytes"})


@app.exception_handler(MediaError)
async def media_exception_handler(request: Request, exc: MediaError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return api_error(str(exc) or "Error", status_code=exc.status_code)


############################
# Routes
############################

@api.get("/health")
def health():
    uptime = max(0.0, time.time() - float(STATE.get("started_at") or time.time()))
    pre = STATE.get("preconverter")
    return {
        "ok": True,
        "time": time.time(),
        "uptime": uptime,
        "root": str(STATE.get("root")),
        "ffmpeg": ffmpeg_available(),
        "ffprobe": ffprobe_available(),
        "preconverter": bool(pre and pre.is_running()),
        "version": app.version,
        "pid": os.getpid(),
    }


@api.get("/config")
def get_config():
    cfg: ServerConfig = STATE["config"]
    return api_success(cfg.model_dump(mode="json"))


@api.get("/videos")
def list_videos(probe: bool = Query(True, description="Include durations from ffprobe")):
    cfg: ServerConfig = STATE["config"]
    root: Path = STATE["root"]
    locator: ArtifactLocator = STATE["locator"]
    items = walk(root, require_marker=cfg.require_include_marker)
    out = []
    for it in items:
        d = it.to_dict()
        src = root / it.rel_path
        if probe:
            meta = STATE["probes"].get(src)
            d["duration"] = meta.duration if meta else None
        if needs_derivation(it.ext):
            d["cached"] = locator.artifact_for(locator.key_for(it.rel_path, it.size, it.mtime_ns)).exists()
        out.append(d)
    return api_success({
        "root": str(root),
        "count": len(out),
        "items": out,
        "categories": group_by_category(items),
    })


@api.get("/stream")
def stream_media(request: Request, path: str = Query(...)):
    file_path = resolve_source(path)
    return serve_range(request, file_path)


@api.get("/remux")
def remux(path: str = Query(...)):
    artifact = ensure_artifact(path, reason="on-demand")
    return RedirectResponse(_stream_url(artifact.rel_path), status_code=302)


@api.get("/play")
def play(path: str = Query(...), transcode: bool = Query(False)):
    source = resolve_source(path)
    rel = _normalize_rel(source)
    if not needs_derivation(source.suffix) and not transcode:
        return RedirectResponse(_stream_url(rel), status_code=302)
    if not transcode:
        artifact = artifact_for_source(source, rel)
        if artifact.exists():
            return RedirectResponse(_stream_url(artifact.rel_path), status_code=302)
    _require_ffmpeg_or_error("live playback")
    meta = STATE["probes"].get(source)
    settings = STATE["engine"].settings
    args = build_live_args(meta, source, settings, force_transcode=transcode)
    log("ffmpeg", f"[play] live path={rel} transcode={transcode}")
    try:
        body = STATE["transcoder"].stream(args)
    except TranscodeError as exc:
        raise ProductionFailed(str(exc)) from exc
    return StreamingResponse(body, media_type="video/mp4", headers={"Cache-Control": "no-store"})


@api.get("/jobs/status")
def jobs_status():
    return api_success(STATE["registry"].status())


@api.get("/subs")
def list_subs(path: str = Query(...)):
    source = resolve_source(path)
    tracks = [{"file": t.file, "lang": t.lang, "label": t.label} for t in find_subtitles(source)]
    return api_success({"tracks": tracks})


@api.get("/sub")
def get_sub(path: str = Query(...), f: str = Query(...), offset_ms: int = Query(0)):
    source = resolve_source(path)
    rel = _normalize_rel(source)
    track = next((t for t in find_subtitles(source) if t.file == f), None)
    if track is None:
        raise NotFound()
    locator: ArtifactLocator = STATE["locator"]
    utf8 = SubtitleCache(locator.scope_dir_for(rel) / "subs").ensure_utf8(track.path)
    if utf8.suffix.lower() == ".vtt":
        text = utf8.read_text(encoding="utf-8")
    else:
        _require_ffmpeg_or_error("subtitle conversion")
        try:
            text = STATE["transcoder"].convert_subtitle(utf8).decode("utf-8", "replace")
        except TranscodeError as exc:
            raise ProductionFailed(str(exc)) from exc
    if offset_ms:
        text = shift_webvtt(text, offset_ms)
    return Response(text, media_type="text/vtt; charset=utf-8", headers={"Cache-Control": "no-store"})


@api.get("/skipintro")
def skip_intro(path: str = Query(...)):
    source = resolve_source(path)
    manual = find_skip_intro(source, STATE["root"])
    if manual:
        return api_success({"start": manual[0], "end": manual[1], "source": "manual"})
    window = STATE["detector"].detect(source, _normalize_rel(source), "intro")
    if window is None:
        return api_success(None, message="No intro window")
    return api_success({**window.to_dict(), "source": "detected"})


@api.post("/intro/detect")
def detect_intro(
    path: str = Query(...),
    kind: str = Query("intro", pattern="^(intro|outro)$"),
    force: bool = Query(False),
):
    source = resolve_source(path)
    verdict = STATE["detector"].verdict(source, _normalize_rel(source), kind, force=force)
    return api_success(verdict.to_dict())


@api.get("/nextepisode")
def next_episode(path: str = Query(...)):
    source = resolve_source(path)
    offset = find_next_episode(source, STATE["root"])
    if offset is None:
        return api_success(None, message="No next-episode marker")
    meta = STATE["probes"].get(source)
    at = next_episode_at(offset, meta.duration if meta else None)
    return api_success({"offset": offset, "at": at})


@api.get("/thumb")
def thumbnail(path: str = Query(...)):
    source = resolve_source(path)
    found = find_thumbnail(source, STATE["root"])
    if found is not None:
        return FileResponse(str(found))
    rel = _normalize_rel(source)
    locator: ArtifactLocator = STATE["locator"]
    key = key_for_source(source, rel)
    out = locator.scope_dir_for(rel) / "thumbs" / f"{key.digest[:16]}.jpg"
    try:
        ensure_thumbnail(source, out, STATE["transcoder"])
    except TranscodeError as exc:
        raise_api_error(f"thumbnail failed: {exc}", status_code=500)
    return FileResponse(str(out), media_type="image/jpeg")


app.include_router(api)


@asynccontextmanager
async def lifespan(app_obj: FastAPI):  # type: ignore[override]
    STATE["started_at"] = time.time()
    cfg: ServerConfig = STATE["config"]
    log("jobs", f"[startup] MEDIA_ROOT={cfg.root} cache_version={cfg.cache_version}")
    try:
        (cfg.root / cfg.cache_dirname).mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("cannot create cache dir under %s: %s", cfg.root, exc)
    pre: Preconverter = STATE["preconverter"]
    if cfg.preconvert.enabled:
        pre.start()
    try:
        yield
    finally:
        pre.stop(timeout=5.0)
        killed = STATE["transcoder"].terminate_all()
        if killed:
            log("ffmpeg", f"[shutdown] terminated {killed} ffmpeg process(es)")


app.router.lifespan_context = lifespan  # type: ignore[attr-defined]


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run(app, host=os.environ.get("HOST", "0.0.0.0"), port=int(os.environ.get("PORT", "9998")))

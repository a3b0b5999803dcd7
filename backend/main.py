from contextlib import asynccontextmanager
from datetime import datetime, timezone
import mimetypes
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import quote, unquote, urlparse

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from log_config import current_request_id, get_logger, reset_request_id, set_request_id
from services.app_config import AppSettings, load_settings
from services.context import AppContext, build_context
from services.crop_pipeline import VideoCropJob
from services.errors import (
    InvalidInput,
    NotFoundError,
    PrivateContent,
    ReelServiceError,
    ResolutionFailed,
    bilingual,
)
from services.extractors import ExtractionError, ExtractionResult, FailureKind
from services.storage import TemporaryArtifact
from services.transform import (
    CropRegion,
    crop_image,
    inspect_image,
    media_kind_for_content_type,
    media_kind_for_filename,
    mime_for_format,
    normalize_output_format,
)
from services.url_validator import is_valid_source_url

logger = get_logger(__name__)

DEFAULT_TITLE = "Instagram Reel"
_TRUE_VALUES = {"1", "true", "yes", "on", "y"}


# =========================
# Helpers
# =========================

def _ctx(request: Request) -> AppContext:
    return request.app.state.context


async def _read_payload(request: Request) -> Dict[str, Any]:
    """JSON 또는 form 본문을 dict로 읽는다."""
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" in content_type:
        try:
            data = await request.json()
        except ValueError as exc:
            raise InvalidInput(
                bilingual("Request body is not valid JSON.", "요청 본문이 올바른 JSON이 아닙니다."),
            ) from exc
        return data if isinstance(data, dict) else {}
    if "form" in content_type:
        form = await request.form()
        return dict(form)
    return {}


def _require_source_url(payload: Dict[str, Any]) -> str:
    raw = payload.get("url")
    url = raw.strip() if isinstance(raw, str) else ""
    if not url:
        raise InvalidInput(bilingual("Instagram URL is required.", "Instagram URL을 입력해 주세요."))
    if not is_valid_source_url(url):
        raise InvalidInput(bilingual("This is not a valid Instagram URL.", "올바른 Instagram URL이 아닙니다."))
    return url


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUE_VALUES


def _as_quality(value: Any, default: int = 90) -> int:
    try:
        return max(1, min(int(float(value)), 100))
    except (TypeError, ValueError, OverflowError):
        return default


def _attachment(filename: str) -> Dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}


def _timestamp_name(prefix: str, ext: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}{ext}"


def _require_crop_enabled(ctx: AppContext) -> None:
    if not ctx.settings.crop_enabled:
        raise NotFoundError(bilingual("Cropping is disabled on this server.", "이 서버에서는 자르기 기능이 꺼져 있습니다."))


async def _resolve(ctx: AppContext, url: str) -> ExtractionResult:
    try:
        return await run_in_threadpool(ctx.resolver.resolve, url)
    except ExtractionError as exc:
        if exc.kind == FailureKind.PRIVATE:
            raise PrivateContent(detail=exc.message) from exc
        raise ResolutionFailed(detail=exc.message) from exc


async def _schedule_release(ctx: AppContext, artifact: TemporaryArtifact, delay_sec: float) -> None:
    ctx.storage.schedule_release(artifact, delay_sec)


# =========================
# App
# =========================

def create_app(settings: Optional[AppSettings] = None, context: Optional[AppContext] = None) -> FastAPI:
    ctx = context or build_context(settings or load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx.storage.ensure_dirs()
        ctx.storage.sweep_expired(max_age_sec=ctx.settings.download_ttl_sec)
        logger.info(
            "Instagram reel service v%s ready (storage=%s, crop=%s, fallback=%s)",
            ctx.settings.version,
            ctx.storage.root,
            ctx.settings.crop_enabled,
            ctx.settings.resolve_fallback_enabled,
        )
        yield
        removed = ctx.storage.release_pending()
        logger.info("shutdown: released %d pending artifact(s)", removed)

    app = FastAPI(title="Instagram Reel Downloader", version=ctx.settings.version, lifespan=lifespan)
    app.state.context = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length", "Content-Disposition"],
    )

    @app.middleware("http")
    async def tag_request(request: Request, call_next):
        token = set_request_id(str(ctx.counter.next()))
        try:
            return await call_next(request)
        finally:
            reset_request_id(token)

    @app.exception_handler(ReelServiceError)
    async def handle_service_error(request: Request, exc: ReelServiceError):
        logger.warning(
            "%s %s -> %d %s%s",
            request.method,
            request.url.path,
            exc.status_code,
            type(exc).__name__,
            f" ({exc.detail})" if exc.detail else "",
        )
        return JSONResponse(status_code=exc.status_code, content=exc.payload())

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=ReelServiceError().payload())

    # --- Instagram ---

    @app.post("/api/review")
    async def review(request: Request):
        url = _require_source_url(await _read_payload(request))
        logger.info("review %s", url)

        result = await _resolve(ctx, url)
        media_url = result.canonical_url
        descriptor = await run_in_threadpool(ctx.fetcher.probe, media_url)
        return {
            "success": True,
            "message": bilingual("Video review complete!", "영상 확인 완료!"),
            "videoInfo": {
                "url": url,
                "mediaUrl": media_url,
                "fileSize": descriptor.size_bytes,
                "contentType": descriptor.content_type,
                "title": result.title or DEFAULT_TITLE,
                "thumbnail": result.thumbnail,
                "previewUrl": f"/api/preview?url={quote(media_url, safe='')}",
            },
        }

    @app.post("/api/download")
    async def download(request: Request):
        payload = await _read_payload(request)
        url = _require_source_url(payload)
        wants_crop = _as_bool(payload.get("crop"))
        region = None
        if wants_crop:
            _require_crop_enabled(ctx)
            region = CropRegion.from_values(
                payload.get("x"), payload.get("y"), payload.get("width"), payload.get("height")
            )
        logger.info("download %s crop=%s", url, wants_crop)

        result = await _resolve(ctx, url)
        media_url = result.canonical_url

        if region is not None:
            return await _download_cropped(ctx, media_url, region)
        if ctx.settings.download_delivery == "link":
            return await _download_stored(ctx, media_url)

        upstream = await run_in_threadpool(ctx.fetcher.open_stream, media_url, None, ctx.settings.download_timeout_sec)
        kind = media_kind_for_content_type(upstream.content_type)
        filename = _timestamp_name("reel", ".jpg" if kind == "image" else ".mp4")
        headers = _attachment(filename)
        if upstream.content_length is not None:
            headers["Content-Length"] = upstream.content_length
        return StreamingResponse(
            upstream.iter_bytes(),
            media_type=upstream.content_type or "video/mp4",
            headers=headers,
        )

    # --- Preview proxy ---

    @app.get("/api/preview")
    async def preview(request: Request, url: Optional[str] = None):
        target = (url or "").strip()
        if target and not target.lower().startswith("http"):
            target = unquote(target)
        if not target:
            raise InvalidInput(bilingual("Video URL required.", "영상 URL이 필요합니다."))
        parsed = urlparse(target)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise InvalidInput(bilingual("Video URL must be an http(s) URL.", "영상 URL은 http/https 형식이어야 합니다."))

        range_header = request.headers.get("range")
        upstream = await run_in_threadpool(ctx.fetcher.open_stream, target, range_header)
        headers = upstream.passthrough_headers()
        headers["Cache-Control"] = "no-cache"
        return StreamingResponse(
            upstream.iter_bytes(),
            status_code=upstream.status_code,
            media_type=upstream.content_type or "video/mp4",
            headers=headers,
        )

    # --- Upload crop / info ---

    @app.post("/api/crop")
    async def crop_upload(
        file: Optional[UploadFile] = File(None),
        x: Optional[str] = Form(None),
        y: Optional[str] = Form(None),
        width: Optional[str] = Form(None),
        height: Optional[str] = Form(None),
        format: str = Form("jpeg"),
        quality: str = Form("90"),
    ):
        _require_crop_enabled(ctx)
        payload, kind, ext = await _read_upload(ctx, file)
        if kind is None:
            raise InvalidInput(bilingual("Unsupported file format.", "지원하지 않는 파일 형식입니다."))
        region = CropRegion.from_values(x, y, width, height)

        if kind == "image":
            fmt = normalize_output_format(format)
            content = await run_in_threadpool(crop_image, payload, region, fmt, _as_quality(quality))
            filename = f"cropped_{uuid.uuid4().hex}.{'jpg' if fmt == 'jpeg' else fmt}"
            if ctx.settings.crop_delivery == "link":
                return await _store_processed(ctx, content, filename)
            headers = _attachment(filename)
            return Response(content=content, media_type=mime_for_format(fmt), headers=headers)

        job = VideoCropJob(
            ctx.storage,
            ctx.transcoder,
            request_id=current_request_id(),
            input_suffix=ext or ".mp4",
            cleanup_delay_sec=ctx.settings.transcode_cleanup_delay_sec,
        )
        await run_in_threadpool(job.write_input, payload)
        await run_in_threadpool(job.run, region)

        if ctx.settings.crop_delivery == "link":
            ctx.storage.release(job.input)
            ctx.storage.schedule_release(job.output, ctx.settings.download_ttl_sec)
            return {
                "success": True,
                "message": bilingual("Video cropped successfully!", "영상 자르기 완료!"),
                "filename": job.output.name,
                "downloadUrl": f"/api/download-processed/{job.output.name}",
            }
        return StreamingResponse(
            job.stream_output(),
            media_type="video/mp4",
            headers=_attachment(f"cropped_{uuid.uuid4().hex}.mp4"),
        )

    @app.post("/api/file-info")
    async def file_info(file: Optional[UploadFile] = File(None)):
        _require_crop_enabled(ctx)
        payload, kind, ext = await _read_upload(ctx, file)
        info: Dict[str, Any] = {
            "filename": file.filename,
            "size": len(payload),
            "mimetype": file.content_type,
            "type": kind or "unknown",
        }

        if kind == "image":
            info.update(await run_in_threadpool(inspect_image, payload, file.filename or ""))
        elif kind == "video":
            artifact = ctx.storage.reserve(
                "uploads", suffix=ext or ".mp4", prefix="temp_probe", owner_request_id=current_request_id()
            )
            try:
                await run_in_threadpool(artifact.path.write_bytes, payload)
                info.update(await run_in_threadpool(ctx.transcoder.probe_video, artifact.path))
            finally:
                ctx.storage.release(artifact)

        return {"success": True, "fileInfo": info}

    # --- Stored files ---

    @app.get("/api/video/{filename}")
    async def serve_download(filename: str):
        return _serve_stored(ctx, "downloads", filename, ctx.settings.download_ttl_sec)

    @app.get("/api/download-processed/{filename}")
    async def serve_processed(filename: str):
        return _serve_stored(ctx, "processed", filename, ctx.settings.processed_ttl_sec)

    @app.get("/api/health")
    async def health():
        return {
            "success": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": ctx.settings.version,
            "requestsServed": ctx.counter.value,
        }

    return app


# =========================
# Route bodies
# =========================

async def _read_upload(ctx: AppContext, file: Optional[UploadFile]):
    if file is None or not file.filename:
        raise InvalidInput(bilingual("Please upload a file.", "파일을 업로드해 주세요."))
    payload = await file.read()
    if not payload:
        raise InvalidInput(bilingual("The uploaded file is empty.", "업로드한 파일이 비어 있습니다."))
    if len(payload) > ctx.settings.upload_max_bytes:
        limit_mb = ctx.settings.upload_max_bytes // (1024 * 1024)
        raise InvalidInput(bilingual(
            f"The file is too large (max {limit_mb}MB).",
            f"파일이 너무 큽니다. (최대 {limit_mb}MB)",
        ))
    kind = media_kind_for_filename(file.filename)
    ext = "." + file.filename.rsplit(".", 1)[-1].lower() if "." in file.filename else ""
    return payload, kind, ext


async def _download_stored(ctx: AppContext, media_url: str):
    upstream = await run_in_threadpool(ctx.fetcher.open_stream, media_url, None, ctx.settings.download_timeout_sec)
    ext = ".jpg" if media_kind_for_content_type(upstream.content_type) == "image" else ".mp4"
    try:
        artifact = ctx.storage.reserve("downloads", suffix=ext, prefix="reel", owner_request_id=current_request_id())
    except Exception:
        upstream.close()
        raise
    try:
        size = await run_in_threadpool(ctx.fetcher.write_stream_to, upstream, artifact.path)
    except Exception:
        ctx.storage.release(artifact)
        raise
    ctx.storage.schedule_release(artifact, ctx.settings.download_ttl_sec)
    logger.info("download stored as %s (%d bytes)", artifact.name, size)
    return {
        "success": True,
        "message": bilingual("Video downloaded successfully!", "영상 다운로드 완료!"),
        "filename": artifact.name,
        "downloadUrl": f"/api/video/{artifact.name}",
        "fileSize": size,
    }


async def _download_cropped(ctx: AppContext, media_url: str, region: CropRegion):
    job = VideoCropJob(
        ctx.storage,
        ctx.transcoder,
        request_id=current_request_id(),
        cleanup_delay_sec=ctx.settings.transcode_cleanup_delay_sec,
    )
    try:
        _size, content_type = await run_in_threadpool(
            ctx.fetcher.download_to, media_url, job.input.path, ctx.settings.download_timeout_sec
        )
    except Exception:
        job.cleanup()
        raise

    if media_kind_for_content_type(content_type) == "image":
        try:
            payload = await run_in_threadpool(job.input.path.read_bytes)
        finally:
            job.cleanup()
        content = await run_in_threadpool(crop_image, payload, region, "jpeg", 90)
        return Response(
            content=content,
            media_type="image/jpeg",
            headers=_attachment(_timestamp_name("cropped_reel", ".jpg")),
        )

    await run_in_threadpool(job.run, region)
    return StreamingResponse(
        job.stream_output(),
        media_type="video/mp4",
        headers=_attachment(_timestamp_name("cropped_reel", ".mp4")),
    )


async def _store_processed(ctx: AppContext, content: bytes, filename: str):
    suffix = "." + filename.rsplit(".", 1)[-1]
    artifact = ctx.storage.reserve("processed", suffix=suffix, prefix="cropped", owner_request_id=current_request_id())
    await run_in_threadpool(artifact.path.write_bytes, content)
    ctx.storage.schedule_release(artifact, ctx.settings.download_ttl_sec)
    return {
        "success": True,
        "message": bilingual("Image cropped successfully!", "이미지 자르기 완료!"),
        "filename": artifact.name,
        "downloadUrl": f"/api/download-processed/{artifact.name}",
    }


def _serve_stored(ctx: AppContext, category: str, filename: str, delete_after_sec: float):
    path = ctx.storage.resolve_served_file(category, filename)
    if path is None:
        raise NotFoundError()
    artifact = ctx.storage.artifact_for(path, category)
    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return FileResponse(
        path,
        media_type=media_type,
        filename=path.name,
        background=BackgroundTask(_schedule_release, ctx, artifact, delete_after_sec),
    )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = app.state.context.settings
    uvicorn.run(app, host=settings.host, port=settings.port)

"""APK build API routes.

Endpoints:
- POST /api/build - Validate options and start a build (202)
- GET /api/build/{build_id}/stream - Server-sent progress events
- GET /api/build/{build_id}/download - Download the signed APK (once)
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.background import BackgroundTask

from pwa_maker import config
from pwa_maker.api.deps import get_build_store, get_builder, get_token_issuer
from pwa_maker.api.exceptions import (
    ArtifactExpiredError,
    BuildNotFoundError,
    BuildNotReadyError,
    CapacityExceededError,
    PayloadTooLargeError,
    TokenInvalidError,
    ValidationError,
)
from pwa_maker.api.rate_limit import BUILD_RATE_LIMIT, BUILD_RATE_LIMIT_MESSAGE, limiter
from pwa_maker.api.response import success_response
from pwa_maker.models import BuildOptions, BuildStatus, ProgressEvent, StartBuildData
from pwa_maker.services import ApkBuilder, BuildStore, BuildTokenIssuer, HostResolutionError
from pwa_maker.services.build_runner import start_build
from pwa_maker.services.build_store import discard_directory
from pwa_maker.services.ssrf_guard import ensure_public_destination

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/build", tags=["Build"])

APK_MEDIA_TYPE = "application/vnd.android.package-archive"
HEARTBEAT_INTERVAL_SECONDS = 15.0


def format_validation_error(exc: PydanticValidationError) -> str:
    """First validation problem as a single user-facing sentence."""
    error = exc.errors()[0]
    message = error.get("msg", "Invalid build options")
    if message.startswith("Value error, "):
        return message[len("Value error, "):]
    field = ".".join(str(part) for part in error.get("loc", ()))
    return f"{field}: {message}" if field else message


@router.post("", status_code=202)
@limiter.limit(BUILD_RATE_LIMIT, error_message=BUILD_RATE_LIMIT_MESSAGE)
async def create_build(
    request: Request,
    body: Any = Body(default=None),
    store: BuildStore = Depends(get_build_store),
    issuer: BuildTokenIssuer = Depends(get_token_issuer),
    builder: ApkBuilder = Depends(get_builder),
) -> JSONResponse:
    """Start an APK build.

    Checks run in order: build token (401), options (400), private
    destinations (403), concurrency cap (503).

    Returns:
        { data: { build_id }, error: null } with status 202
    """
    # Chunked bodies carry no Content-Length for the middleware to check
    if len(await request.body()) > config.MAX_REQUEST_BODY_BYTES:
        raise PayloadTooLargeError(config.MAX_REQUEST_BODY_BYTES)

    payload = dict(body) if isinstance(body, dict) else {}
    if not issuer.verify_token(payload.pop("buildToken", None)):
        raise TokenInvalidError()

    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        options = BuildOptions.model_validate(
            payload, context={"allow_http": request.app.state.allow_http}
        )
    except PydanticValidationError as e:
        raise ValidationError(format_validation_error(e)) from e

    # The project generator fetches icons itself, so every URL is checked up front
    for url in (options.pwaUrl, options.iconUrl, options.maskableIconUrl):
        if not url:
            continue
        try:
            await ensure_public_destination(url)
        except HostResolutionError as e:
            raise ValidationError(str(e)) from e

    limit = request.app.state.max_concurrent_builds
    if store.count_active_jobs() >= limit:
        raise CapacityExceededError(limit)

    job = store.create_job(options)
    start_build(job.build_id, job.options, store, builder)

    return JSONResponse(
        status_code=202,
        content=success_response(StartBuildData(build_id=job.build_id)),
    )


@router.get("/{build_id}/stream")
async def stream_build(
    build_id: str,
    store: BuildStore = Depends(get_build_store),
) -> StreamingResponse:
    """Stream build progress as server-sent events.

    Past events are replayed first, then live ones. The stream ends after
    the terminal `complete` or `error` event; `: heartbeat` comments keep
    idle connections open.
    """
    if store.get_job(build_id) is None:
        raise BuildNotFoundError(build_id)

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()

    def listener(event: ProgressEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    if not store.subscribe(build_id, listener):
        raise BuildNotFoundError(build_id)

    async def event_stream():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_INTERVAL_SECONDS)
                except asyncio.TimeoutError:
                    if store.get_job(build_id) is None:
                        # Expired or downloaded elsewhere
                        break
                    yield ": heartbeat\n\n"
                    continue

                yield f"data: {event.model_dump_json(exclude_none=True)}\n\n"
                if event.is_terminal():
                    break
        finally:
            store.unsubscribe(build_id, listener)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/{build_id}/download")
async def download_build(
    build_id: str,
    store: BuildStore = Depends(get_build_store),
) -> FileResponse:
    """Download the signed APK.

    The build is claimed from the store before the file is sent, so each
    APK can be downloaded exactly once even under concurrent requests. The
    working directory is removed after the response.
    """
    job = store.get_job(build_id)
    if job is None:
        raise BuildNotFoundError(build_id)
    if job.status != BuildStatus.complete:
        raise BuildNotReadyError(build_id, job.status.value)
    if not job.apk_path or not Path(job.apk_path).is_file():
        raise ArtifactExpiredError(build_id)

    job = store.claim_artifact(build_id)
    if job is None:
        # Another request claimed it first
        raise BuildNotFoundError(build_id)

    logger.info(f"Serving APK for build {build_id}")
    return FileResponse(
        path=job.apk_path,
        media_type=APK_MEDIA_TYPE,
        filename=job.apk_file_name or "app.apk",
        background=BackgroundTask(discard_directory, job.work_dir) if job.work_dir else None,
    )

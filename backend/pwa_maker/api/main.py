"""FastAPI application setup."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from pwa_maker import __version__, config
from pwa_maker.api.exceptions import (
    ArtifactExpiredError,
    BuildNotFoundError,
    BuildNotReadyError,
    CapacityExceededError,
    PayloadTooLargeError,
    TokenInvalidError,
    ValidationError,
)
from pwa_maker.api.rate_limit import limiter
from pwa_maker.api.response import error_response
from pwa_maker.api.routes import build, health, manifest, token
from pwa_maker.services import (
    ApkBuilder,
    BuildStore,
    BuildTokenIssuer,
    FetchTimeoutError,
    InvalidManifestError,
    ManifestFetchError,
    ManifestLinkNotFoundError,
    SSRFBlockedError,
)

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Referrer-Policy": "no-referrer",
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    await app.state.build_store.start_cleanup_task()
    yield
    # Shutdown
    await app.state.build_store.stop_cleanup_task()


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_response(code, message))


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors onto the {data, error} envelope."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors."""
        return _error(400, "VALIDATION_ERROR", exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle malformed request bodies and parameters."""
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _error(400, "VALIDATION_ERROR", message)

    @app.exception_handler(TokenInvalidError)
    async def token_invalid_handler(request: Request, exc: TokenInvalidError) -> JSONResponse:
        """Handle missing or expired build tokens."""
        return _error(401, "TOKEN_INVALID", str(exc))

    @app.exception_handler(SSRFBlockedError)
    async def ssrf_blocked_handler(request: Request, exc: SSRFBlockedError) -> JSONResponse:
        """Handle requests that target private hosts."""
        logger.warning(f"Blocked request to private host {exc.hostname}")
        return _error(403, "SSRF_BLOCKED", str(exc))

    @app.exception_handler(ManifestFetchError)
    async def manifest_fetch_handler(request: Request, exc: ManifestFetchError) -> JSONResponse:
        """Handle upstream fetch failures."""
        return _error(502, "MANIFEST_FETCH_FAILED", str(exc))

    @app.exception_handler(ManifestLinkNotFoundError)
    async def manifest_link_handler(
        request: Request, exc: ManifestLinkNotFoundError
    ) -> JSONResponse:
        """Handle pages without a manifest link."""
        return _error(422, "MANIFEST_LINK_NOT_FOUND", str(exc))

    @app.exception_handler(InvalidManifestError)
    async def invalid_manifest_handler(request: Request, exc: InvalidManifestError) -> JSONResponse:
        """Handle manifests that are not JSON objects."""
        return _error(422, "INVALID_MANIFEST", str(exc))

    @app.exception_handler(FetchTimeoutError)
    async def fetch_timeout_handler(request: Request, exc: FetchTimeoutError) -> JSONResponse:
        """Handle upstream timeouts."""
        return _error(504, "UPSTREAM_TIMEOUT", str(exc))

    @app.exception_handler(CapacityExceededError)
    async def capacity_handler(request: Request, exc: CapacityExceededError) -> JSONResponse:
        """Handle the concurrent build limit."""
        return JSONResponse(
            status_code=503,
            content=error_response("CAPACITY_EXCEEDED", str(exc)),
            headers={"Retry-After": "60"},
        )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Handle per-IP rate limits."""
        logger.warning(f"Rate limit hit on {request.url.path}")
        return JSONResponse(
            status_code=429,
            content=error_response("RATE_LIMITED", exc.detail),
            headers={"Retry-After": str(exc.limit.limit.get_expiry())},
        )

    @app.exception_handler(PayloadTooLargeError)
    async def payload_too_large_handler(request: Request, exc: PayloadTooLargeError) -> JSONResponse:
        """Handle oversized request bodies."""
        return _error(413, "PAYLOAD_TOO_LARGE", str(exc))

    @app.exception_handler(BuildNotFoundError)
    async def build_not_found_handler(request: Request, exc: BuildNotFoundError) -> JSONResponse:
        """Handle unknown, downloaded or expired builds."""
        return _error(404, "BUILD_NOT_FOUND", str(exc))

    @app.exception_handler(BuildNotReadyError)
    async def build_not_ready_handler(request: Request, exc: BuildNotReadyError) -> JSONResponse:
        """Handle downloads of unfinished builds."""
        return _error(409, "BUILD_NOT_READY", str(exc))

    @app.exception_handler(ArtifactExpiredError)
    async def artifact_expired_handler(request: Request, exc: ArtifactExpiredError) -> JSONResponse:
        """Handle APKs that disappeared from disk."""
        return _error(410, "ARTIFACT_EXPIRED", str(exc))


def create_app(
    store: Optional[BuildStore] = None,
    token_issuer: Optional[BuildTokenIssuer] = None,
    builder: Optional[ApkBuilder] = None,
    allow_http: Optional[bool] = None,
    max_concurrent_builds: Optional[int] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    cors_origin: Optional[str] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Every process-lifetime service lives on `app.state`; tests pass their
    own instances instead of patching module globals.
    """
    app = FastAPI(
        title="PWA Maker Android API",
        description="Turns Progressive Web Apps into signed Android APKs",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.build_store = store if store is not None else BuildStore()
    app.state.token_issuer = token_issuer if token_issuer is not None else BuildTokenIssuer()
    app.state.builder = builder if builder is not None else ApkBuilder()
    app.state.allow_http = config.DEVELOPMENT_MODE if allow_http is None else allow_http
    app.state.max_concurrent_builds = (
        max_concurrent_builds if max_concurrent_builds is not None else config.MAX_CONCURRENT_BUILDS
    )
    app.state.http_transport = http_transport
    app.state.limiter = limiter

    origin = cors_origin or config.CORS_ORIGIN
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in origin.split(",") if o.strip()],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        content_length = request.headers.get("content-length", "")
        if content_length.isdigit() and int(content_length) > config.MAX_REQUEST_BODY_BYTES:
            return _error(
                413,
                "PAYLOAD_TOO_LARGE",
                str(PayloadTooLargeError(config.MAX_REQUEST_BODY_BYTES)),
            )
        return await call_next(request)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    register_exception_handlers(app)

    # Register routes
    app.include_router(health.router)
    app.include_router(token.router)
    app.include_router(manifest.router)
    app.include_router(build.router)

    return app


app = create_app()


def run() -> None:
    """Console entrypoint: serve the API with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"Starting PWA Maker API on {config.HOST}:{config.PORT} ({config.APP_ENV})")
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()

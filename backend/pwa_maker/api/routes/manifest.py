"""Manifest lookup endpoint.

Endpoints:
- GET /api/manifest?url=... - Fetch a PWA's web manifest and derived build defaults
"""

import logging
from urllib.parse import urlsplit

from fastapi import APIRouter, Query, Request

from pwa_maker.api.exceptions import ValidationError
from pwa_maker.api.rate_limit import MANIFEST_RATE_LIMIT, MANIFEST_RATE_LIMIT_MESSAGE, limiter
from pwa_maker.api.response import success_response
from pwa_maker.models import ManifestData
from pwa_maker.models.build_options import is_url
from pwa_maker.services.manifest_fetcher import derive_options, fetch_manifest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Manifest"])


@router.get("/manifest")
@limiter.limit(MANIFEST_RATE_LIMIT, error_message=MANIFEST_RATE_LIMIT_MESSAGE)
async def get_manifest(
    request: Request,
    url: str = Query(default="", description="PWA page URL or direct manifest URL"),
) -> dict:
    """Fetch a web manifest and suggest build options.

    Returns:
        { data: { manifest, defaults }, error: null } on success

    Raises:
        ValidationError: Missing or malformed URL (400).
        SSRFBlockedError, ManifestFetchError, ManifestLinkNotFoundError,
        InvalidManifestError, FetchTimeoutError: mapped in main.py.
    """
    url = url.strip()
    if not url:
        raise ValidationError("url query parameter is required")
    if not is_url(url):
        raise ValidationError("url must be a valid URL")
    if urlsplit(url).scheme != "https" and not request.app.state.allow_http:
        raise ValidationError("url must use HTTPS")

    manifest = await fetch_manifest(url, transport=request.app.state.http_transport)
    defaults = derive_options(manifest, url)
    logger.info(f"Resolved manifest for {urlsplit(url).hostname}")

    return success_response(
        ManifestData(
            manifest=manifest.model_dump(mode="json", exclude_none=True),
            defaults=defaults,
        )
    )

"""Web app manifest discovery, icon selection and option defaults.

Provides:
- fetch_manifest: direct JSON manifest, or discovery via <link rel="manifest">
- fetch_icon_bytes: guarded icon download for the build pipeline
- select_best_icon / select_maskable_icon: icon ranking
- derive_options / derive_package_id: build option defaults

Every request goes through an httpx client whose request hook runs the SSRF
guard, so redirects to internal hosts are refused as well.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup
from pydantic import ValidationError

from pwa_maker.models import (
    DisplayMode,
    ManifestDefaults,
    OrientationMode,
    WebManifest,
    WebManifestIcon,
)

from .errors import (
    FetchTimeoutError,
    InvalidManifestError,
    ManifestFetchError,
    ManifestLinkNotFoundError,
)
from .ssrf_guard import ensure_public_url, guard_request

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 10.0
MAX_REDIRECTS = 5
USER_AGENT = "PWAMakerAndroid/1.0 (+https://github.com/pwa-maker-android)"

DEFAULT_APP_NAME = "My App"
DEFAULT_SHORT_NAME = "App"
DEFAULT_THEME_COLOR = "#000000"
DEFAULT_BACKGROUND_COLOR = "#ffffff"
SHORT_NAME_LIMIT = 12


# =============================================================================
# HTTP helpers
# =============================================================================

def guarded_client(
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: float = FETCH_TIMEOUT_SECONDS,
) -> httpx.AsyncClient:
    """Create an httpx client that refuses private destinations.

    Args:
        transport: Optional transport override (tests use httpx.MockTransport).
        timeout: Per-request deadline in seconds.
    """
    return httpx.AsyncClient(
        transport=transport,
        timeout=timeout,
        follow_redirects=True,
        max_redirects=MAX_REDIRECTS,
        headers={"User-Agent": USER_AGENT},
        event_hooks={"request": [guard_request]},
    )


async def _get(client: httpx.AsyncClient, url: str) -> httpx.Response:
    ensure_public_url(url)
    try:
        return await client.get(url)
    except httpx.TimeoutException as e:
        raise FetchTimeoutError(url, FETCH_TIMEOUT_SECONDS) from e
    except httpx.HTTPError as e:
        # Connection refused, DNS failure, redirect loops: no usable response
        raise ManifestFetchError(None, url, what="URL", detail=type(e).__name__) from e


def _parse_manifest(body: Any, url: str) -> WebManifest:
    if not isinstance(body, dict):
        raise InvalidManifestError("Manifest is not a valid JSON object", url)
    try:
        manifest = WebManifest.model_validate(body)
    except ValidationError as e:
        raise InvalidManifestError(f"Manifest has invalid fields: {e.errors()[0]['msg']}", url) from e
    manifest._source_url = url
    return manifest


def _decode_json(response: httpx.Response, url: str) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidManifestError("Manifest is not valid JSON", url) from e


def looks_like_manifest_url(url: str) -> bool:
    """Guess whether a URL points straight at a manifest JSON file."""
    path = urlsplit(url).path
    return url.endswith(".json") or "/manifest" in path


def extract_manifest_url(html: str, page_url: str) -> Optional[str]:
    """Find <link rel="manifest" href="..."> and resolve it against the page URL."""
    soup = BeautifulSoup(html, "html.parser")
    for link in soup.find_all("link"):
        rel = link.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        href = link.get("href")
        if href and any(token.lower() == "manifest" for token in rel):
            return urljoin(page_url, href.strip())
    return None


# =============================================================================
# Public API
# =============================================================================

async def fetch_manifest(
    url: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> WebManifest:
    """Fetch and parse the web manifest for a page or manifest URL.

    Args:
        url: Either a direct manifest URL or a page that links to one.
        transport: Optional httpx transport override.

    Returns:
        The parsed manifest; `source_url` is the URL it was loaded from.

    Raises:
        SSRFBlockedError: Target (or a redirect) is a private host.
        ManifestFetchError: Non-2xx response.
        ManifestLinkNotFoundError: HTML page without a manifest link.
        InvalidManifestError: Body is not a JSON object.
        FetchTimeoutError: Deadline exceeded.
    """
    url = url.strip()
    async with guarded_client(transport) as client:
        if looks_like_manifest_url(url):
            return await _fetch_manifest_json(client, url)

        response = await _get(client, url)
        if not response.is_success:
            raise ManifestFetchError(response.status_code, url, what="URL")

        content_type = response.headers.get("content-type", "").lower()
        final_url = str(response.url)
        if "application/json" in content_type or "manifest" in content_type:
            return _parse_manifest(_decode_json(response, final_url), final_url)

        manifest_url = extract_manifest_url(response.text, final_url)
        if not manifest_url:
            raise ManifestLinkNotFoundError(url)

        logger.debug(f"Discovered manifest {manifest_url} on {url}")
        return await _fetch_manifest_json(client, manifest_url)


async def _fetch_manifest_json(client: httpx.AsyncClient, url: str) -> WebManifest:
    response = await _get(client, url)
    if not response.is_success:
        raise ManifestFetchError(response.status_code, url)
    final_url = str(response.url)
    return _parse_manifest(_decode_json(response, final_url), final_url)


async def fetch_icon_bytes(
    url: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bytes:
    """Download an icon through the SSRF guard.

    Raises:
        SSRFBlockedError, ManifestFetchError, FetchTimeoutError
    """
    async with guarded_client(transport) as client:
        response = await _get(client, url)
        if not response.is_success:
            raise ManifestFetchError(response.status_code, url, what="icon")
        return response.content


# =============================================================================
# Icon selection
# =============================================================================

def max_icon_size(sizes: Optional[str]) -> int:
    """Largest width in a space-separated sizes string ("48x48 512x512")."""
    best = 0
    for token in (sizes or "").split():
        width = token.lower().split("x", 1)[0]
        if width.isdigit():
            best = max(best, int(width))
    return best


def is_vector_icon(icon: WebManifestIcon) -> bool:
    if icon.type and "svg" in icon.type.lower():
        return True
    return urlsplit(icon.src).path.lower().endswith(".svg")


def _has_purpose(icon: WebManifestIcon, purpose: str) -> bool:
    return purpose in (icon.purpose or "").lower().split()


def _pick_icon(icons: Iterable[WebManifestIcon], base_url: str) -> Optional[str]:
    # Raster before vector, then larger first; sorted() is stable so ties keep manifest order
    ranked = sorted(icons, key=lambda i: (is_vector_icon(i), -max_icon_size(i.sizes)))
    for icon in ranked:
        try:
            resolved = urljoin(base_url, icon.src.strip())
        except ValueError:
            continue
        if urlsplit(resolved).scheme == "https":
            return resolved
        logger.debug(f"Skipping non-HTTPS icon {resolved}")
    return None


def select_best_icon(icons: Iterable[WebManifestIcon], base_url: str) -> Optional[str]:
    """Return the URL of the best non-maskable icon, or None."""
    return _pick_icon((i for i in icons if not _has_purpose(i, "maskable")), base_url)


def select_maskable_icon(icons: Iterable[WebManifestIcon], base_url: str) -> Optional[str]:
    """Return the URL of the best maskable icon, or None."""
    return _pick_icon((i for i in icons if _has_purpose(i, "maskable")), base_url)


# =============================================================================
# Option defaults
# =============================================================================

def derive_package_id(pwa_url: str) -> str:
    """Derive a valid Android package id from a URL's hostname.

    e.g. https://my-app.example.com -> com.example.myapp
    """
    hostname = urlsplit(pwa_url).hostname or ""
    labels = [label for label in hostname.split(".") if label]
    labels.reverse()

    cleaned = []
    for label in labels:
        segment = re.sub(r"[^a-z0-9_]", "", label.lower())
        if not re.match(r"[a-z]", segment):
            segment = f"a{segment}"
        cleaned.append(segment)

    while len(cleaned) < 3:
        cleaned.append("app")

    return ".".join(cleaned)


def _normalise_display(value: Optional[str]) -> DisplayMode:
    try:
        return DisplayMode(value)
    except ValueError:
        return DisplayMode.standalone


def _normalise_orientation(value: Optional[str]) -> OrientationMode:
    try:
        return OrientationMode(value)
    except ValueError:
        return OrientationMode.default


def derive_options(manifest: WebManifest, pwa_url: str) -> ManifestDefaults:
    """Build default options from a manifest; the user may override any field."""
    base_url = manifest.source_url or pwa_url
    name = manifest.name or DEFAULT_APP_NAME
    short_name = manifest.short_name or manifest.name or DEFAULT_SHORT_NAME

    return ManifestDefaults(
        pwaUrl=pwa_url,
        appName=name,
        shortName=short_name[:SHORT_NAME_LIMIT],
        packageId=derive_package_id(pwa_url),
        display=_normalise_display(manifest.display),
        orientation=_normalise_orientation(manifest.orientation),
        themeColor=manifest.theme_color or DEFAULT_THEME_COLOR,
        backgroundColor=manifest.background_color or DEFAULT_BACKGROUND_COLOR,
        iconUrl=select_best_icon(manifest.icons, base_url),
        maskableIconUrl=select_maskable_icon(manifest.icons, base_url),
    )

"""Services package for build orchestration and outbound fetches."""

from . import build_runner, manifest_fetcher, ssrf_guard

from .build_store import BuildStore
from .build_token import BuildTokenIssuer
from .builder import ApkBuilder, BuildResult
from .errors import (
    ArtifactNotFoundError,
    BuildError,
    FetchError,
    FetchTimeoutError,
    HostResolutionError,
    InvalidManifestError,
    ManifestFetchError,
    ManifestLinkNotFoundError,
    SSRFBlockedError,
    ToolFailureError,
)
from .tool_runner import BuildStage, SubprocessToolRunner, ToolResult, ToolRunner

__all__ = [
    "build_runner",
    "manifest_fetcher",
    "ssrf_guard",
    # Build state
    "BuildStore",
    "BuildTokenIssuer",
    # Pipeline
    "ApkBuilder",
    "BuildResult",
    "BuildStage",
    "SubprocessToolRunner",
    "ToolResult",
    "ToolRunner",
    # Errors
    "ArtifactNotFoundError",
    "BuildError",
    "FetchError",
    "FetchTimeoutError",
    "HostResolutionError",
    "InvalidManifestError",
    "ManifestFetchError",
    "ManifestLinkNotFoundError",
    "SSRFBlockedError",
    "ToolFailureError",
]

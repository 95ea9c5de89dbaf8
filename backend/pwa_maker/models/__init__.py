"""Backend models package."""

from .api_responses import HealthData, ManifestData, StartBuildData, TokenData
from .build_job import (
    STATUS_TRANSITIONS,
    BuildJob,
    BuildStatus,
    ProgressEvent,
    ProgressEventType,
    ProgressListener,
)
from .build_options import (
    HEX_COLOR_PATTERN,
    PACKAGE_ID_PATTERN,
    BuildOptions,
    DisplayMode,
    OrientationMode,
)
from .manifest import ManifestDefaults, WebManifest, WebManifestIcon

__all__ = [
    # API payloads
    "HealthData",
    "ManifestData",
    "StartBuildData",
    "TokenData",
    # Build jobs
    "STATUS_TRANSITIONS",
    "BuildJob",
    "BuildStatus",
    "ProgressEvent",
    "ProgressEventType",
    "ProgressListener",
    # Build options
    "HEX_COLOR_PATTERN",
    "PACKAGE_ID_PATTERN",
    "BuildOptions",
    "DisplayMode",
    "OrientationMode",
    # Manifest
    "ManifestDefaults",
    "WebManifest",
    "WebManifestIcon",
]

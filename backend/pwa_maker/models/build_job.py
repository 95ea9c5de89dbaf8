"""Build job model for async APK builds.

This model tracks one build attempt: its lifecycle state, its working
directory, its result and the progress events it has emitted.
Used by build_store.py, which is the only code allowed to mutate it.

Pydantic v2. Extra fields are forbidden to prevent drift.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .build_options import BuildOptions


def _utcnow() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class BuildStatus(str, Enum):
    """Build job status values."""
    queued = "queued"      # Created, pipeline not started
    running = "running"    # Pipeline in progress
    complete = "complete"  # Signed APK ready for download
    error = "error"        # Pipeline failed


# Allowed forward transitions; terminal states have none
STATUS_TRANSITIONS: dict[BuildStatus, frozenset[BuildStatus]] = {
    BuildStatus.queued: frozenset({BuildStatus.running, BuildStatus.error}),
    BuildStatus.running: frozenset({BuildStatus.complete, BuildStatus.error}),
    BuildStatus.complete: frozenset(),
    BuildStatus.error: frozenset(),
}


class ProgressEventType(str, Enum):
    """Kinds of progress events sent to stream subscribers."""
    log = "log"
    complete = "complete"
    error = "error"


class ProgressEvent(BaseModel):
    """One immutable entry in a build's event history."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: ProgressEventType
    message: Optional[str] = None
    percent: Optional[int] = Field(default=None, ge=0, le=100)

    def is_terminal(self) -> bool:
        """Check if this event ends the stream."""
        return self.type in (ProgressEventType.complete, ProgressEventType.error)


ProgressListener = Callable[[ProgressEvent], None]


class BuildJob(BaseModel):
    """State for one APK build.

    Tracks status, result paths and the append-only event log.
    Listeners are transient stream callbacks and are never serialized.
    """
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    # Identity
    build_id: str = Field(description="UUID identifier for this build")
    options: BuildOptions = Field(description="Options the build was created from")

    # Status
    status: BuildStatus = Field(
        default=BuildStatus.queued,
        description="Current build status"
    )

    # Working directory, owned exclusively by this build
    work_dir: Optional[str] = Field(
        default=None,
        description="Temporary build directory (set once the pipeline starts)"
    )

    # Timestamps
    created_at: datetime = Field(
        default_factory=_utcnow,
        description="Build creation timestamp"
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        description="When the build completed or failed"
    )

    # Results
    apk_path: Optional[str] = Field(
        default=None,
        description="Path to the signed APK (if complete)"
    )
    apk_file_name: Optional[str] = Field(
        default=None,
        description="Sanitized file name offered on download"
    )

    # Error handling
    error_message: Optional[str] = Field(
        default=None,
        description="Error details if the build failed"
    )

    # Progress bus
    events: list[ProgressEvent] = Field(default_factory=list)
    listeners: list[ProgressListener] = Field(default_factory=list, exclude=True)

    def is_terminal(self) -> bool:
        """Check if build is in a terminal state (no more updates expected)."""
        return self.status in (BuildStatus.complete, BuildStatus.error)

    def is_active(self) -> bool:
        """Check if build counts against the concurrency cap."""
        return self.status in (BuildStatus.queued, BuildStatus.running)

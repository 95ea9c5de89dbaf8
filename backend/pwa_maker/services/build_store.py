"""In-memory build store and per-build progress bus.

MVP storage: builds are lost on server restart (accepted: a restart also
invalidates every build token).

Features:
- Single owner of all BuildJob mutation
- Append-only event log per build, replayed to late subscribers
- TTL cleanup from creation time via a periodic task
- Concurrency accounting for the admission cap
- Single-use artifact claim for downloads

Store operations never await. A re-entrant lock makes each of them atomic
with respect to other threads as well; in particular `subscribe` replays the
history and registers the listener as one step, so no event emitted in
between can be lost.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from pwa_maker import config
from pwa_maker.models import (
    STATUS_TRANSITIONS,
    BuildJob,
    BuildOptions,
    BuildStatus,
    ProgressEvent,
    ProgressListener,
)

logger = logging.getLogger(__name__)

# How often to sweep for expired builds
CLEANUP_INTERVAL_SECONDS = 60


def discard_directory(path: str) -> None:
    """Best-effort recursive delete, off the event loop when one is running."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        shutil.rmtree(path, ignore_errors=True)
        return
    loop.run_in_executor(None, shutil.rmtree, path, True)


class BuildStore:
    """In-memory build store with TTL cleanup and progress fan-out.

    Usage:
        store = BuildStore()
        job = store.create_job(options)
        store.subscribe(job.build_id, listener)
        store.emit(job.build_id, ProgressEvent(type=ProgressEventType.log, message="hi"))
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        """Initialize build store.

        Args:
            ttl_seconds: Lifetime of a build from creation. Defaults to BUILD_TTL_HOURS.
        """
        self._jobs: dict[str, BuildJob] = {}
        self._lock = threading.RLock()
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else config.BUILD_TTL_SECONDS
        self._cleanup_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_cleanup_task(self) -> None:
        """Start the background cleanup task."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Build store cleanup task started")

    async def stop_cleanup_task(self) -> None:
        """Stop the background cleanup task."""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            logger.info("Build store cleanup task stopped")

    async def _cleanup_loop(self) -> None:
        """Periodically delete expired builds."""
        while True:
            try:
                await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
                self.cleanup_expired_jobs()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in build cleanup loop: {e}")

    def cleanup_expired_jobs(self, now: Optional[datetime] = None) -> int:
        """Delete builds older than the TTL, whatever their status.

        Returns:
            Number of builds removed.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self._ttl_seconds)
        with self._lock:
            expired_ids = [
                build_id for build_id, job in self._jobs.items()
                if job.created_at <= cutoff
            ]
            for build_id in expired_ids:
                self.delete_job(build_id)

        if expired_ids:
            logger.info(f"Cleaned up {len(expired_ids)} expired builds")
        return len(expired_ids)

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create_job(self, options: BuildOptions) -> BuildJob:
        """Create a queued build.

        Args:
            options: Validated options; the build keeps its own copy.

        Returns:
            The new build.
        """
        job = BuildJob(
            build_id=str(uuid4()),
            options=options.model_copy(),
            status=BuildStatus.queued,
        )
        with self._lock:
            self._jobs[job.build_id] = job

        logger.debug(f"Created build {job.build_id}")
        return job

    def get_job(self, build_id: str) -> Optional[BuildJob]:
        """Get a build by ID, or None."""
        with self._lock:
            return self._jobs.get(build_id)

    def update_job(self, build_id: str, **updates) -> Optional[BuildJob]:
        """Update a build's fields.

        Unknown ids are ignored. Status changes that are not forward
        transitions are dropped with a warning.

        Returns:
            The updated build if found, None otherwise.
        """
        with self._lock:
            job = self._jobs.get(build_id)
            if not job:
                return None

            new_status = updates.pop("status", None)
            if new_status is not None and new_status != job.status:
                new_status = BuildStatus(new_status)
                if new_status not in STATUS_TRANSITIONS[job.status]:
                    logger.warning(
                        f"Ignoring status change {job.status.value} -> "
                        f"{new_status.value} for build {build_id}"
                    )
                else:
                    job.status = new_status
                    if job.is_terminal():
                        job.completed_at = datetime.now(timezone.utc)

            for key, value in updates.items():
                if key in ("build_id", "events", "listeners", "options"):
                    logger.warning(f"Field {key} of build {build_id} cannot be updated")
                elif key in BuildJob.model_fields:
                    setattr(job, key, value)
                else:
                    logger.warning(f"Unknown field {key} for build update")

            return job

    def delete_job(self, build_id: str) -> bool:
        """Delete a build and, best effort, its working directory.

        The directory recorded on the build is used, never a path derived
        from the artifact location.

        Returns:
            True if deleted, False if not found.
        """
        with self._lock:
            job = self._jobs.pop(build_id, None)
            if job is None:
                return False
            job.listeners.clear()

        if job.work_dir:
            discard_directory(job.work_dir)
        logger.debug(f"Deleted build {build_id}")
        return True

    def claim_artifact(self, build_id: str) -> Optional[BuildJob]:
        """Remove a completed build and hand it to a single downloader.

        Claiming is atomic: of several concurrent callers exactly one gets
        the build. The caller becomes responsible for its working directory.

        Returns:
            The claimed build, or None if unknown, not complete or already claimed.
        """
        with self._lock:
            job = self._jobs.get(build_id)
            if job is None or job.status != BuildStatus.complete:
                return None
            del self._jobs[build_id]
            job.listeners.clear()

        logger.debug(f"Claimed artifact of build {build_id}")
        return job

    def count_active_jobs(self) -> int:
        """Count queued and running builds (the admission cap input)."""
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.is_active())

    # -------------------------------------------------------------------------
    # Progress bus
    # -------------------------------------------------------------------------

    def emit(self, build_id: str, event: ProgressEvent) -> None:
        """Append an event to the build's history and notify listeners."""
        with self._lock:
            job = self._jobs.get(build_id)
            if not job:
                return
            job.events.append(event)
            for listener in list(job.listeners):
                try:
                    listener(event)
                except Exception as e:
                    logger.debug(f"Progress listener for build {build_id} failed: {e}")

    def subscribe(self, build_id: str, listener: ProgressListener) -> bool:
        """Replay the build's history to a listener, then register it.

        Returns:
            True if the build exists.
        """
        with self._lock:
            job = self._jobs.get(build_id)
            if not job:
                return False
            for event in list(job.events):
                try:
                    listener(event)
                except Exception as e:
                    logger.debug(f"Progress listener for build {build_id} failed on replay: {e}")
            job.listeners.append(listener)
            return True

    def unsubscribe(self, build_id: str, listener: ProgressListener) -> None:
        """Remove a listener; calling it twice is harmless."""
        with self._lock:
            job = self._jobs.get(build_id)
            if not job:
                return
            job.listeners = [l for l in job.listeners if l != listener]

    def clear(self) -> None:
        """Drop every build without touching the filesystem."""
        with self._lock:
            self._jobs.clear()

    def __len__(self) -> int:
        """Return total number of builds in store."""
        return len(self._jobs)

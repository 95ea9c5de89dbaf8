"""Background build orchestration.

Drives one job from `queued` to a terminal state: marks it running, runs the
ApkBuilder, forwards progress to the store's event log, and records the
outcome. Pipeline errors never escape the task.
"""

from __future__ import annotations

import asyncio
import logging
import re

from pwa_maker.models import BuildOptions, BuildStatus, ProgressEvent, ProgressEventType

from .build_store import BuildStore, discard_directory
from .builder import ApkBuilder
from .errors import BuildError, FetchError

logger = logging.getLogger(__name__)

# Strong references to running pipelines so they are not garbage collected
_running_builds: set[asyncio.Task] = set()


def sanitize_file_name(app_name: str) -> str:
    """Download file name for an app: unsafe characters dropped, .apk suffix."""
    return f"{re.sub(r'[^A-Za-z0-9_-]', '', app_name) or 'app'}.apk"


def start_build(
    build_id: str,
    options: BuildOptions,
    store: BuildStore,
    builder: ApkBuilder,
) -> asyncio.Task:
    """Schedule the pipeline for a created job and return immediately."""
    logger.info(f"Starting build {build_id} for {options.packageId}")
    task = asyncio.create_task(
        run_build(build_id, options, store, builder),
        name=f"apk_build_{build_id}",
    )
    _running_builds.add(task)
    task.add_done_callback(_running_builds.discard)
    return task


async def run_build(
    build_id: str,
    options: BuildOptions,
    store: BuildStore,
    builder: ApkBuilder,
) -> None:
    """Background task for one APK build.

    Updates job status on completion or failure.
    """
    def on_progress(message: str, percent: int) -> None:
        store.emit(
            build_id,
            ProgressEvent(type=ProgressEventType.log, message=message, percent=percent),
        )

    work_dir = builder.allocate_work_dir()
    store.update_job(build_id, status=BuildStatus.running, work_dir=str(work_dir))
    on_progress("Build started…", 5)

    try:
        result = await builder.build(options, work_dir, on_progress)

    except (BuildError, FetchError, ValueError) as e:
        _fail(store, build_id, str(e))
        logger.error(f"Build {build_id} failed: {e}")
        return

    except Exception as e:
        _fail(store, build_id, str(e) or type(e).__name__)
        logger.exception(f"Build {build_id} failed with unexpected error")
        return

    # The job may have expired while the pipeline ran
    if store.get_job(build_id) is None:
        logger.info(f"Build {build_id} finished after its job was removed")
        discard_directory(str(result.work_dir))
        return

    store.update_job(
        build_id,
        status=BuildStatus.complete,
        apk_path=str(result.apk_path),
        apk_file_name=sanitize_file_name(options.appName),
    )
    store.emit(
        build_id,
        ProgressEvent(type=ProgressEventType.complete, message="APK ready for download", percent=100),
    )
    logger.info(f"Build {build_id} completed successfully")


def _fail(store: BuildStore, build_id: str, message: str) -> None:
    # The builder already removed the working directory
    store.update_job(build_id, status=BuildStatus.error, error_message=message, work_dir=None)
    store.emit(build_id, ProgressEvent(type=ProgressEventType.error, message=message))

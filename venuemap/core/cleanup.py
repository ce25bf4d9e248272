"""
Cleanup: delete the downloaded video after job completion (success or failure).
"""

import logging
import time
from pathlib import Path

from venuemap.core.constants import VIDEO_EXT, PARTIAL_SUFFIXES

logger = logging.getLogger(__name__)


def _artifact_paths(path: Path) -> list[Path]:
    # yt-dlp leaves <name>.part / <name>.ytdl next to an interrupted download
    return [path] + [path.with_name(path.name + suffix) for suffix in PARTIAL_SUFFIXES]


def remove_job_artifact(path: Path) -> bool:
    """
    Delete a job's downloaded file and any partial download files.
    Returns True if anything was removed. Raises OSError if a file exists
    but cannot be deleted.
    """
    removed = False
    for candidate in _artifact_paths(path):
        if candidate.exists():
            candidate.unlink()
            logger.debug("Deleted: %s", candidate)
            removed = True
    return removed


def remove_job_artifact_quietly(path: Path) -> bool:
    """Best-effort variant for failure paths: logs instead of raising."""
    try:
        return remove_job_artifact(path)
    except OSError as e:
        logger.warning("Failed to delete %s: %s", path, e)
        return False


def sweep_stale_artifacts(temp_dir: Path, max_age_sec: float, now: float | None = None) -> int:
    """
    Remove downloads left behind by crashed workers.
    Only files older than max_age_sec are touched, so in-flight jobs are safe.
    """
    if not temp_dir.exists():
        return 0

    now = time.time() if now is None else now
    removed = 0
    for entry in temp_dir.iterdir():
        if not entry.is_file():
            continue
        if not (entry.suffix == VIDEO_EXT or entry.name.endswith(PARTIAL_SUFFIXES)):
            continue
        try:
            if now - entry.stat().st_mtime < max_age_sec:
                continue
            entry.unlink()
            removed += 1
            logger.info("Swept stale artifact: %s", entry)
        except OSError as e:
            logger.warning("Failed to sweep %s: %s", entry, e)
    return removed

"""
Cleanup: delete a job's audio assets and its workspace.
Runs on every exit path, exactly once per job.
"""

import shutil
import logging
import threading
from pathlib import Path

from tubescribe.core.models import TranscriptionJob

logger = logging.getLogger(__name__)

_cleanup_lock = threading.Lock()


def cleanup_job(job: TranscriptionJob, keep_debug: bool = False) -> bool:
    """
    Delete every registered AudioAsset, then the job workspace.
    Returns False if the job was already cleaned up. Missing files are fine.

    With keep_debug the workspace directory survives, but audio never does.
    """
    with _cleanup_lock:
        if job.cleaned_up:
            return False
        job.cleaned_up = True

    deleted = 0
    for asset in job.assets:
        try:
            if asset.delete():
                deleted += 1
        except OSError as e:
            logger.warning("Failed to delete %s: %s", asset.path, e)

    if job.workspace is not None:
        remove_workspace(job.workspace, keep_debug)

    logger.debug("Job %s cleanup: %d asset(s) deleted", job.id, deleted)
    return True


def remove_workspace(job_workspace: Path, keep_debug: bool = False):
    if not job_workspace.exists():
        return

    if keep_debug:
        # leave the directory for inspection but drop any audio left in it
        for path in job_workspace.rglob("source.*"):
            try:
                path.unlink()
            except OSError as e:
                logger.warning("Failed to delete %s: %s", path, e)
        return

    try:
        shutil.rmtree(job_workspace)
        logger.debug("Removed workspace: %s", job_workspace)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove workspace %s: %s", job_workspace, e)

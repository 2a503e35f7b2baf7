"""Background job manager.

Each job is a detached worker process (``python -m cadence.worker``) with a
row in background_jobs. The row is the only contract between the parent and
the worker: the worker moves it to completed/failed on its own, and a worker
that died without doing so is detected by probing its pid (observe_job).
"""

import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from . import db
from .errors import CadenceError, JobAlreadyRunningError, JobNotFoundError

logger = logging.getLogger(__name__)

WORKER_MODULE = "cadence.worker"


@dataclass
class BackgroundJobResult:
    job_id: int
    pid: int


def is_process_running(pid: int | None) -> bool:
    """Check if a process is still running.

    Args:
        pid: Process ID to check

    Returns:
        True if the process exists. A process owned by another user counts
        as running. Never raises.
    """
    if pid is None or pid <= 0:
        return False

    try:
        # Signal 0 checks for existence without affecting the process
        os.kill(pid, 0)
        return True
    except PermissionError:
        return True
    except (OSError, ProcessLookupError):
        return False


def start_background_job(
    project_dir: Path | str,
    directive: str,
    external_session_handle: str,
    session_id: str,
) -> BackgroundJobResult:
    """Create a job row and spawn a detached worker for it.

    Returns as soon as the worker is started.

    Raises:
        OSError: if the worker cannot be spawned (the job is marked failed)
    """
    project_dir = Path(project_dir).resolve()
    job_id = db.create_background_job(project_dir, session_id, directive)

    try:
        process = subprocess.Popen(
            [sys.executable, "-m", WORKER_MODULE, str(job_id), str(project_dir), external_session_handle],
            cwd=project_dir,
            env=os.environ.copy(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,  # Detach from parent
        )
    except OSError as e:
        db.update_background_job(
            project_dir,
            job_id,
            status="failed",
            completed_at=db.utc_now(),
            error_message=f"Failed to spawn worker process: {e}",
        )
        raise

    # The worker records its own pid too; this one is available immediately
    db.update_background_job(project_dir, job_id, pid=process.pid)
    logger.info("Started background job #%d (pid %d)", job_id, process.pid)
    return BackgroundJobResult(job_id=job_id, pid=process.pid)


def kill_background_job(
    project_dir: Path | str,
    job: dict[str, Any],
    reason: str = "Stopped by user",
) -> bool:
    """Terminate a worker and mark its job failed.

    A job that already reached a terminal status keeps it.
    """
    pid = job.get("pid")
    if is_process_running(pid):
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass  # exited in between

    if db.fail_running_job(project_dir, job["id"], reason):
        logger.info("Background job #%d stopped: %s", job["id"], reason)
    return True


def observe_job(project_dir: Path | str, job: dict[str, Any]) -> dict[str, Any]:
    """Read a job, repairing it if its worker died without reporting.

    A running job whose pid is set but not alive is relabelled failed. The
    conditional update means only the first observer writes the failure and
    its log line. A running job without a pid is still being spawned and is
    left alone.

    Returns:
        The current job row
    """
    if job["status"] != "running" or job.get("pid") is None:
        return job
    if is_process_running(job["pid"]):
        return job

    message = f"Worker process crashed or not found (pid {job['pid']})"
    if db.fail_running_job(project_dir, job["id"], message):
        db.log_background_message(project_dir, job["id"], "error", "system", message)
        logger.warning("Background job #%d: %s", job["id"], message)

    return db.get_background_job(project_dir, job["id"]) or job


def get_job_status(project_dir: Path | str, job_id: int) -> dict[str, Any]:
    """Observed state of a job.

    Raises:
        JobNotFoundError: if the id is unknown
    """
    job = db.get_background_job(project_dir, job_id)
    if job is None:
        raise JobNotFoundError(f"Background job #{job_id} not found")
    return observe_job(project_dir, job)


def get_active_job(project_dir: Path | str, session_id: str) -> dict[str, Any] | None:
    """The live job of a session, if any.

    Goes through observe_job, so a crashed worker is repaired here and the
    session is reported as free.
    """
    job = db.get_latest_running_job(project_dir, session_id)
    if job is None:
        return None
    job = observe_job(project_dir, job)
    return job if job["status"] == "running" else None


def submit_brief(project_dir: Path | str, directive: str) -> BackgroundJobResult:
    """Run a directive in the background for the active session.

    Raises:
        CadenceError: if there is no active session with a resumable handle
        JobAlreadyRunningError: if the session already has a live job
    """
    session = db.get_active_session_handle(project_dir)
    if session is None:
        raise CadenceError("No active session to run the directive in")

    active = get_active_job(project_dir, session["session_id"])
    if active is not None:
        raise JobAlreadyRunningError(active)

    return start_background_job(
        project_dir,
        directive,
        session["sdk_session_id"],
        session["session_id"],
    )

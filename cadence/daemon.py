#!/usr/bin/env python3
"""Scheduler daemon - polls for due schedules and runs them as background jobs.

Invoked as::

    python -m cadence.daemon <project_dir> [--debug]

One long-lived process per project (guarded by a lock file). A single loop
drives two timers: the liveness heartbeat and the poll tick. Each tick first
reconciles schedules whose job has finished, then passes the tick-level
gates (enabled, quiet hours, daily spend, active session) and admits due
schedules up to the concurrency limit.
"""

import argparse
import fcntl
import logging
import os
import signal
import subprocess
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator

from . import db, schedules
from .background import is_process_running, observe_job, start_background_job
from .config import (
    HEARTBEAT_INTERVAL_SECONDS,
    SchedulerConfig,
    get_cost_limit_daily,
    get_daemon_lock_path,
    get_logs_dir,
    get_scheduler_config,
    load_config,
)
from .errors import ConfigError
from .extensions import ProjectContext

logger = logging.getLogger("cadence.daemon")

DAEMON_MODULE = "cadence.daemon"

# Upper bound on one sleep of the main loop so stop requests are noticed
MAX_SLEEP_SECONDS = 1.0


# ---------------------------------------------------------------------------
# Tick gates
# ---------------------------------------------------------------------------


@dataclass
class TickContext:
    """Everything the gate chain needs to decide whether a tick may admit work."""
    project: ProjectContext
    scheduler: SchedulerConfig
    now: datetime
    session: dict | None = None  # Set by guard_active_session


def is_in_quiet_hours(now: datetime, start: str | None, end: str | None) -> bool:
    """Check whether local wall-clock time falls in [start, end).

    A window whose start is after its end wraps midnight. Either bound
    missing means no quiet hours.
    """
    if not start or not end:
        return False

    local = now.astimezone() if now.tzinfo else now
    sh, sm = (int(part) for part in start.split(":"))
    eh, em = (int(part) for part in end.split(":"))
    now_minutes = local.hour * 60 + local.minute
    start_minutes = sh * 60 + sm
    end_minutes = eh * 60 + em

    if start_minutes <= end_minutes:
        return start_minutes <= now_minutes < end_minutes
    # Wraps midnight
    return now_minutes >= start_minutes or now_minutes < end_minutes


def guard_enabled(ctx: TickContext) -> tuple[bool, str]:
    """Check if the scheduler is switched on.

    Returns:
        (should_proceed, reason_if_blocked)
    """
    if not ctx.scheduler.enabled:
        return (False, "disabled")
    return (True, "")


def guard_quiet_hours(ctx: TickContext) -> tuple[bool, str]:
    """Check the configured quiet hours window."""
    if is_in_quiet_hours(ctx.now, ctx.scheduler.quiet_hours_start, ctx.scheduler.quiet_hours_end):
        return (False, "quiet_hours")
    return (True, "")


def guard_daily_cost(ctx: TickContext) -> tuple[bool, str]:
    """Check today's spend against settings.cost_limit_daily.

    A limit of 0 admits nothing.
    """
    limit = get_cost_limit_daily(ctx.project.config)
    spent = db.get_total_cost_today(ctx.project.project_dir)
    if spent >= limit:
        return (False, f"daily_cost_limit (${spent:.2f} >= ${limit:.2f})")
    return (True, "")


def guard_active_session(ctx: TickContext) -> tuple[bool, str]:
    """Require an active session with a resumable handle.

    Stores the session on the context for admission.
    """
    session = db.get_active_session_handle(ctx.project.project_dir)
    if session is None:
        return (False, "no_active_session")
    ctx.session = session
    return (True, "")


TICK_GUARDS = [
    guard_enabled,
    guard_quiet_hours,
    guard_daily_cost,
    guard_active_session,
]


def evaluate_tick(ctx: TickContext) -> tuple[bool, str]:
    """Run the gate chain. Returns (True, "") when the tick may admit work."""
    for guard in TICK_GUARDS:
        proceed, reason = guard(ctx)
        if not proceed:
            logger.debug("Tick blocked by %s: %s", guard.__name__, reason)
            return (False, reason)
    return (True, "")


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def _next_run(schedule: dict[str, Any], now: datetime) -> str | None:
    if not schedule.get("cron_expression"):
        return None
    return schedules.compute_next_run(schedule["cron_expression"], now)


def _close_execution(project_dir: Path, schedule_id: int, job: dict[str, Any]) -> None:
    """Copy a finished job's outcome onto the execution that started it."""
    history = schedules.get_execution_history(project_dir, schedule_id, limit=1)
    if not history or history[0]["job_id"] != job["id"]:
        return

    schedules.update_execution(
        project_dir,
        history[0]["id"],
        status="completed" if job["status"] == "completed" else "failed",
        completed_at=db.utc_now(),
        cost_usd=job.get("total_cost_usd") or 0.0,
        num_turns=job.get("num_turns") or 0,
        duration_ms=job.get("duration_ms") or 0,
        error_message=job.get("error_message"),
    )


def reconcile_schedule(
    project_dir: Path, schedule: dict[str, Any], scheduler: SchedulerConfig, now: datetime
) -> bool:
    """Fold the outcome of a running schedule's job back into the schedule.

    Returns:
        True if the schedule left the running state
    """
    next_run = _next_run(schedule, now)

    job = db.get_background_job(project_dir, schedule["last_job_id"]) if schedule["last_job_id"] else None
    if job is None:
        schedules.mark_schedule_completed(project_dir, schedule["id"], next_run)
        return True

    job = observe_job(project_dir, job)
    if job["status"] == "running":
        return False

    _close_execution(project_dir, schedule["id"], job)

    if job["status"] == "completed":
        cost = job.get("total_cost_usd") or 0.0
        schedules.add_schedule_cost(project_dir, schedule["id"], cost)
        limit = scheduler.cost_limit_per_run
        if limit > 0 and cost > limit:
            schedules.mark_schedule_failed(
                project_dir,
                schedule["id"],
                f"Last execution cost (${cost:.2f}) exceeded cost_limit_per_run (${limit:.2f})",
                next_run,
            )
        else:
            schedules.mark_schedule_completed(project_dir, schedule["id"], next_run)
    else:
        schedules.mark_schedule_failed(
            project_dir,
            schedule["id"],
            job.get("error_message") or "Background job failed",
            next_run,
        )
    return True


def reconcile_running_schedules(
    project_dir: Path, scheduler: SchedulerConfig, now: datetime
) -> list[int]:
    """Reconcile every running schedule. Returns the ids that finished."""
    finished = []
    for schedule in schedules.get_running_schedules(project_dir):
        try:
            if reconcile_schedule(project_dir, schedule, scheduler, now):
                finished.append(schedule["id"])
        except Exception as e:
            logger.error("Reconciling schedule #%d failed: %s", schedule["id"], e)
    return finished


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


@dataclass
class PollResult:
    """What one tick did, for logging and tests."""
    reconciled: list[int] = field(default_factory=list)
    admitted: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    blocked: list[int] = field(default_factory=list)
    errored: list[int] = field(default_factory=list)
    gate: str | None = None


def execute_schedule(project_dir: Path, schedule: dict[str, Any], session: dict) -> int:
    """Start a background job for a schedule and mark it running.

    Returns:
        The job id
    """
    directive = f"[SCHEDULED::{schedule['id']}] {schedule['directive']}"
    result = start_background_job(
        project_dir,
        directive,
        session["sdk_session_id"],
        session["session_id"],
    )
    schedules.mark_schedule_running(project_dir, schedule["id"], result.job_id)
    schedules.record_execution(
        project_dir,
        schedule["id"],
        result.job_id,
        trigger_source="trigger" if schedule["trigger_type"] else "cron",
    )
    return result.job_id


def admit_schedule(
    project_dir: Path,
    schedule: dict[str, Any],
    scheduler: SchedulerConfig,
    session: dict,
    now: datetime,
) -> str:
    """Skip, block or start one due schedule.

    Returns:
        "skipped", "blocked" or "admitted"
    """
    if (
        scheduler.missed_run_policy == "skip"
        and schedule["cron_expression"]
        and schedules.seconds_overdue(schedule, now) > 2 * scheduler.poll_interval_seconds
    ):
        schedules.update_schedule(project_dir, schedule["id"], next_run_at=_next_run(schedule, now))
        schedules.record_execution(project_dir, schedule["id"], None, trigger_source="cron", status="skipped")
        logger.info("Schedule #%d missed its run, skipped", schedule["id"])
        return "skipped"

    limit = scheduler.cost_limit_per_run
    if limit > 0 and schedule["run_count"] > 0:
        average = schedule["total_cost_usd"] / schedule["run_count"]
        if average > limit:
            message = f"Average cost per run (${average:.2f}) exceeds cost_limit_per_run (${limit:.2f})"
            logger.warning("Schedule #%d blocked: %s", schedule["id"], message)
            schedules.mark_schedule_failed(project_dir, schedule["id"], message, _next_run(schedule, now))
            return "blocked"

    job_id = execute_schedule(project_dir, schedule, session)
    print(f"[{datetime.now().isoformat()}] Schedule #{schedule['id']} started as job #{job_id}")
    return "admitted"


def poll_once(ctx: ProjectContext, now: datetime | None = None) -> PollResult:
    """Run one scheduler tick.

    Args:
        ctx: Project scope for this tick
        now: Tick time (defaults to the current time)
    """
    now = now or datetime.now(timezone.utc)
    project_dir = ctx.project_dir
    scheduler = get_scheduler_config(ctx.config)
    result = PollResult()

    # Finished jobs are folded back regardless of the gates below
    result.reconciled = reconcile_running_schedules(project_dir, scheduler, now)

    tick = TickContext(project=ctx, scheduler=scheduler, now=now)
    proceed, reason = evaluate_tick(tick)
    if not proceed:
        result.gate = reason
        return result

    due = schedules.get_due_schedules(project_dir, now)
    if not due:
        return result

    slots = scheduler.max_concurrent - len(schedules.get_running_schedules(project_dir))

    for schedule in due:
        if slots <= 0:
            break

        try:
            outcome = admit_schedule(project_dir, schedule, scheduler, tick.session, now)
        except Exception as e:
            logger.error("Schedule #%d execution error: %s", schedule["id"], e)
            try:
                schedules.mark_schedule_failed(project_dir, schedule["id"], str(e), _next_run(schedule, now))
            except Exception as mark_error:
                logger.error("Could not mark schedule #%d failed: %s", schedule["id"], mark_error)
            result.errored.append(schedule["id"])
            continue

        getattr(result, outcome).append(schedule["id"])
        if outcome == "admitted":
            slots -= 1

    return result


# ---------------------------------------------------------------------------
# Daemon process
# ---------------------------------------------------------------------------


@contextmanager
def locked_or_skip(path: Path) -> Generator[bool, None, None]:
    """Hold an exclusive non-blocking flock on path for the block.

    Yields:
        True if the lock was acquired, False if another process holds it
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        os.close(fd)
        yield False
        return

    try:
        yield True
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


class SchedulerDaemon:
    """Heartbeat and poll timers driven by one cooperative loop."""

    def __init__(
        self,
        project_dir: Path | str,
        config: dict[str, Any],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.project_dir = Path(project_dir)
        self.config = config
        self.scheduler = get_scheduler_config(config)
        self.clock = clock
        self.sleep = sleep
        self._stopping = False

    def request_stop(self, signum=None, frame=None) -> None:
        self._stopping = True

    def record_start(self) -> None:
        db.set_state_value(self.project_dir, db.STATE_DAEMON_PID, str(os.getpid()))
        db.set_state_value(self.project_dir, db.STATE_CONNECTION_STATE, "running")
        self.heartbeat()

    def heartbeat(self) -> None:
        try:
            db.set_state_value(self.project_dir, db.STATE_DAEMON_HEARTBEAT, db.utc_now())
        except Exception as e:
            logger.warning("Heartbeat write failed: %s", e)

    def record_stop(self) -> None:
        try:
            db.set_state_value(self.project_dir, db.STATE_CONNECTION_STATE, "stopped")
            db.set_state_value(self.project_dir, db.STATE_DAEMON_PID, "")
        except Exception as e:
            logger.warning("Could not record daemon stop: %s", e)

    def tick(self) -> PollResult | None:
        """One poll with its own project context. Errors are logged, not raised."""
        logger.debug("Scheduler tick starting")
        ctx = ProjectContext(project_dir=self.project_dir, config=self.config)
        try:
            result = poll_once(ctx)
        except Exception:
            logger.exception("Scheduler poll error")
            return None
        finally:
            ctx.close()

        logger.debug(
            "Scheduler tick complete: reconciled=%s admitted=%s skipped=%s blocked=%s gate=%s",
            result.reconciled, result.admitted, result.skipped, result.blocked, result.gate,
        )
        return result

    def run_forever(self) -> None:
        self.record_start()
        print(f"[{datetime.now().isoformat()}] Scheduler daemon started (pid {os.getpid()})")

        next_poll = self.clock()
        next_heartbeat = self.clock() + HEARTBEAT_INTERVAL_SECONDS
        try:
            while not self._stopping:
                now = self.clock()
                if now >= next_poll:
                    self.tick()
                    next_poll = now + self.scheduler.poll_interval_seconds
                if now >= next_heartbeat:
                    self.heartbeat()
                    next_heartbeat = now + HEARTBEAT_INTERVAL_SECONDS
                if self._stopping:
                    break
                wait = min(next_poll, next_heartbeat) - self.clock()
                self.sleep(min(max(wait, 0.0), MAX_SLEEP_SECONDS))
        finally:
            self.record_stop()
            print(f"[{datetime.now().isoformat()}] Scheduler daemon stopped")


# ---------------------------------------------------------------------------
# Daemon control
# ---------------------------------------------------------------------------


@dataclass
class DaemonStatus:
    pid: int | None
    alive: bool
    heartbeat: str | None
    connection_state: str | None

    @property
    def stale(self) -> bool:
        """State says running but the process is gone."""
        return self.connection_state == "running" and not self.alive


def get_daemon_status(project_dir: Path | str) -> DaemonStatus:
    raw_pid = db.get_state_value(project_dir, db.STATE_DAEMON_PID)
    pid = int(raw_pid) if raw_pid and raw_pid.isdigit() else None
    return DaemonStatus(
        pid=pid,
        alive=is_process_running(pid),
        heartbeat=db.get_state_value(project_dir, db.STATE_DAEMON_HEARTBEAT) or None,
        connection_state=db.get_state_value(project_dir, db.STATE_CONNECTION_STATE) or None,
    )


def start_daemon(project_dir: Path | str, debug: bool = False) -> int:
    """Spawn a detached daemon unless one is already alive.

    Returns:
        Pid of the running daemon
    """
    status = get_daemon_status(project_dir)
    if status.alive:
        return status.pid

    project_dir = Path(project_dir).resolve()
    cmd = [sys.executable, "-m", DAEMON_MODULE, str(project_dir)]
    if debug:
        cmd.append("--debug")

    process = subprocess.Popen(
        cmd,
        cwd=project_dir,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,  # Detach from parent
    )
    logger.info("Scheduler daemon spawned with pid %d", process.pid)
    return process.pid


def stop_daemon(project_dir: Path | str, timeout: float = 10.0) -> bool:
    """Stop the daemon: SIGTERM, wait, then SIGKILL.

    Returns:
        True if a live daemon was signalled
    """
    status = get_daemon_status(project_dir)
    signalled = False

    if status.alive:
        signalled = True
        os.kill(status.pid, signal.SIGTERM)
        deadline = time.monotonic() + timeout
        while is_process_running(status.pid) and time.monotonic() < deadline:
            time.sleep(0.1)
        if is_process_running(status.pid):
            logger.warning("Daemon %d ignored SIGTERM, killing", status.pid)
            try:
                os.kill(status.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    db.set_state_value(project_dir, db.STATE_CONNECTION_STATE, "stopped")
    db.set_state_value(project_dir, db.STATE_DAEMON_PID, "")
    return signalled


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def setup_daemon_logging(project_dir: Path | str, debug: bool) -> Path | None:
    """Dated log file with --debug, INFO to stderr otherwise."""
    formatter = logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s")
    root = logging.getLogger()

    if debug:
        logs_dir = get_logs_dir(project_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = logs_dir / f"scheduler-{datetime.now().strftime('%Y-%m-%d')}.log"
        handler = logging.FileHandler(log_path)
        root.setLevel(logging.DEBUG)
    else:
        log_path = None
        handler = logging.StreamHandler(sys.stderr)
        root.setLevel(logging.INFO)

    handler.setFormatter(formatter)
    root.addHandler(handler)
    return log_path


def main(argv: list[str] | None = None) -> None:
    """Entry point for the scheduler daemon."""
    parser = argparse.ArgumentParser(description="Run the cadence scheduler daemon")
    parser.add_argument("project_dir", help="Project whose .cadence/state.db is scheduled")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging to .cadence/logs/",
    )
    args = parser.parse_args(argv)
    project_dir = Path(args.project_dir).resolve()

    if not db.database_exists(project_dir):
        print(f"Error: no state database found in {project_dir}", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_config(project_dir)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    log_path = setup_daemon_logging(project_dir, args.debug)
    if log_path:
        print(f"Debug mode enabled - logs in {log_path}")

    with locked_or_skip(get_daemon_lock_path(project_dir)) as acquired:
        if not acquired:
            print("Another scheduler instance is running, exiting")
            sys.exit(0)

        daemon = SchedulerDaemon(project_dir, config)
        signal.signal(signal.SIGTERM, daemon.request_stop)
        signal.signal(signal.SIGINT, daemon.request_stop)
        daemon.run_forever()


if __name__ == "__main__":
    main()

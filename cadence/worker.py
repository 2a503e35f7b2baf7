"""Background worker process.

Invoked as::

    python -m cadence.worker <job_id> <project_dir> <session_handle>

Reads the directive from the job row (never from argv), runs it through the
agent invocation service, streams progress into background_logs and leaves
the job row completed or failed. There are no retries.
"""

import argparse
import logging
import os
import re
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from . import db
from . import scheduler_hooks  # noqa: F401  registers scheduler hooks
from .agent_service import AgentService, ClaudeCliService, ProgressEvent
from .config import (
    DEFAULT_AGENT_TARGET,
    get_agent_command,
    get_default_agent_target,
    get_logs_dir,
    load_config,
)
from .errors import ConfigError
from .extensions import ProjectContext, collect_context, dispatch_message
from .schedules import get_schedule

logger = logging.getLogger("cadence.worker")

SCHEDULED_PREFIX_RE = re.compile(r"^\[SCHEDULED::(\d+)\]")

# Agent status keeps a short preview of what is being worked on
STATUS_PREVIEW_CHARS = 100


def resolve_agent_target(project_dir: Path | str, directive: str, default: str = DEFAULT_AGENT_TARGET) -> str:
    """Responsible agent for a directive.

    Scheduled directives carry their schedule id; the schedule's agent_target
    wins when the schedule still exists.
    """
    match = SCHEDULED_PREFIX_RE.match(directive)
    if match:
        schedule = get_schedule(project_dir, int(match.group(1)))
        if schedule and schedule.get("agent_target"):
            return schedule["agent_target"]
    return default


def setup_worker_logging(project_dir: Path | str, job_id: int) -> Path:
    """Send this process's log records to a per-job file."""
    logs_dir = get_logs_dir(project_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / f"worker-{job_id}.log"

    handler = logging.FileHandler(log_path)
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.INFO)
    return log_path


class BackgroundWorker:
    """Runs one background job to a terminal status."""

    def __init__(
        self,
        job_id: int,
        project_dir: Path | str,
        session_handle: str,
        service: AgentService | None = None,
    ):
        self.job_id = job_id
        self.project_dir = Path(project_dir)
        self.session_handle = session_handle
        self.service = service
        self.agent_role = DEFAULT_AGENT_TARGET
        self.ctx: ProjectContext | None = None

    def role_for_event(self, event: ProgressEvent) -> str:
        if event.type in ("assistant", "tool_use"):
            return "subagent" if event.parent_id else self.agent_role
        return "system"

    def on_progress(self, event: ProgressEvent) -> None:
        """Record one progress event and let message handlers see it."""
        if not event.content:
            return
        db.log_background_message(
            self.project_dir, self.job_id, event.type, self.role_for_event(event), event.content,
        )
        if self.ctx is not None:
            dispatch_message(
                {"type": event.type, "content": event.content, "parent_id": event.parent_id},
                self.ctx,
            )

    def _fail(self, error: str, duration_ms: int | None = None) -> None:
        fields: dict[str, Any] = {
            "status": "failed",
            "completed_at": db.utc_now(),
            "error_message": error,
        }
        if duration_ms is not None:
            fields["duration_ms"] = duration_ms
        db.update_background_job(self.project_dir, self.job_id, **fields)

    def run(self) -> int:
        job = db.get_background_job(self.project_dir, self.job_id)
        if job is None:
            print(f"Job #{self.job_id} not found in database", file=sys.stderr)
            return 1

        directive = job["directive"]
        db.update_background_job(self.project_dir, self.job_id, pid=os.getpid())

        try:
            config = load_config(self.project_dir)
        except ConfigError as e:
            self._fail(f"Config load failed: {e}")
            return 1

        self.agent_role = resolve_agent_target(self.project_dir, directive, get_default_agent_target(config))
        db.set_agent_status(self.project_dir, self.agent_role, "working", directive[:STATUS_PREVIEW_CHARS])

        self.ctx = ProjectContext(project_dir=self.project_dir, config=config)
        service = self.service or ClaudeCliService(get_agent_command(config), cwd=str(self.project_dir))
        started = time.monotonic()

        try:
            result = service.invoke(
                directive,
                self.session_handle,
                self.on_progress,
                context=collect_context(self.ctx),
            )
            # Wall time only when the service reports none
            duration_ms = result.duration_ms or int((time.monotonic() - started) * 1000)
            db.record_cost(
                self.project_dir,
                self.agent_role,
                job["session_id"],
                result.cost_usd,
                result.input_tokens,
                result.output_tokens,
            )
            db.set_agent_status(self.project_dir, self.agent_role, "idle")
            db.update_background_job(
                self.project_dir,
                self.job_id,
                status="completed",
                completed_at=db.utc_now(),
                total_cost_usd=result.cost_usd,
                num_turns=result.num_turns,
                duration_ms=duration_ms,
                result_summary=f"Completed in {result.num_turns} turns, ${result.cost_usd:.4f} cost",
            )
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error("Job #%d failed: %s", self.job_id, e)
            db.log_background_message(self.project_dir, self.job_id, "error", "system", f"[ERROR] {e}")
            try:
                db.set_agent_status(self.project_dir, self.agent_role, "error")
            except Exception as status_error:
                logger.warning("Could not record agent status: %s", status_error)
            self._fail(str(e), duration_ms)
            return 1
        finally:
            # Flushes schedule actions still waiting in the debounce window
            self.ctx.close()

        logger.info("Job #%d completed: %d turns, $%.4f", self.job_id, result.num_turns, result.cost_usd)
        return 0

    def execute(self) -> int:
        """Run the job with top-level error handling.

        Returns:
            Exit code
        """
        exit_code = 1
        try:
            logger.info("Worker starting for job #%d (pid %d)", self.job_id, os.getpid())
            exit_code = self.run()
        except KeyboardInterrupt:
            logger.info("Worker interrupted")
            exit_code = 130
        except Exception as e:
            logger.exception("Worker fatal error")
            print(f"Background worker fatal error: {e}", file=sys.stderr)
            exit_code = 1
        return exit_code


def _handle_sigterm(signum, frame) -> None:
    raise SystemExit(128 + signum)


def main(argv: list[str] | None = None) -> None:
    """Entry point for the worker process."""
    parser = argparse.ArgumentParser(description="Run one cadence background job")
    parser.add_argument("job_id", type=int)
    parser.add_argument("project_dir")
    parser.add_argument("session_handle")
    args = parser.parse_args(argv)

    signal.signal(signal.SIGTERM, _handle_sigterm)
    setup_worker_logging(args.project_dir, args.job_id)
    print(f"[{datetime.now().isoformat()}] Worker started for job #{args.job_id}")

    worker = BackgroundWorker(args.job_id, args.project_dir, args.session_handle)
    sys.exit(worker.execute())


if __name__ == "__main__":
    main()

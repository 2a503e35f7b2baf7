"""Schedule store: CRUD, cron evaluation and execution history.

A schedule is either recurring (``cron_expression``) or event-triggered
(``trigger_type`` + optional ``trigger_value``). The daemon owns the status
transitions; everything else goes through the functions here.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from croniter import croniter

from .config import DEFAULT_AGENT_TARGET, TRIGGER_TYPES
from .db import from_db_timestamp, get_connection, to_db_timestamp, utc_now
from .errors import InvalidCronError

logger = logging.getLogger(__name__)

# Columns update_schedule() is allowed to touch
ALLOWED_SCHEDULE_FIELDS = {
    "name",
    "description",
    "cron_expression",
    "agent_target",
    "directive",
    "enabled",
    "status",
    "trigger_type",
    "trigger_value",
    "last_run_at",
    "next_run_at",
    "last_job_id",
    "last_error",
    "run_count",
    "total_cost_usd",
    "max_retries",
}

# Columns update_execution() is allowed to touch
ALLOWED_EXECUTION_FIELDS = {
    "job_id",
    "status",
    "completed_at",
    "cost_usd",
    "num_turns",
    "duration_ms",
    "error_message",
}

# How many upcoming schedules format_for_context() lists
UPCOMING_LIMIT = 5

SCHEDULE_MARKER_HELP = """\
To manage schedules, embed these markers in your response:
  SCHEDULE::CREATE name="<name>" cron="<cron expression>" agent=<role> directive="<what to do>"
  SCHEDULE::CREATE name="<name>" trigger=task_completed:<task id> directive="<what to do>"
  SCHEDULE::ENABLE id=<schedule id>
  SCHEDULE::DISABLE id=<schedule id>
  SCHEDULE::DELETE id=<schedule id>"""


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------


def compute_next_run(cron_expression: str, from_date: datetime | None = None) -> str | None:
    """Next strictly-future occurrence of a cron expression.

    The expression is evaluated in local time; the result is a stored (UTC)
    timestamp.

    Args:
        cron_expression: Standard 5 or 6 field cron expression
        from_date: Reference time, defaults to now. Naive values are local.

    Returns:
        Stored timestamp, or None if the expression cannot be parsed
    """
    base = (from_date or datetime.now(timezone.utc)).astimezone()
    try:
        next_run = croniter(cron_expression, base).get_next(datetime)
    except (ValueError, KeyError, TypeError) as e:
        logger.debug("Cannot evaluate cron expression %r: %s", cron_expression, e)
        return None
    return to_db_timestamp(next_run)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


def create_schedule(
    project_dir: Path | str,
    name: str,
    directive: str,
    cron_expression: str | None = None,
    agent_target: str = DEFAULT_AGENT_TARGET,
    description: str = "",
    trigger_type: str | None = None,
    trigger_value: str | None = None,
    enabled: bool = True,
    max_retries: int = 0,
) -> int:
    """Register a schedule.

    A schedule has either a cron_expression or a trigger_type, never both.
    An empty trigger_value is stored as NULL (listen for every event of the
    type).

    Raises:
        InvalidCronError: if cron_expression cannot be parsed (nothing is stored)
        ValueError: if both or neither of cron_expression and trigger_type are
            given, or trigger_type is not a known trigger type

    Returns:
        The new schedule id
    """
    cron_expression = cron_expression or None
    trigger_type = trigger_type or None
    trigger_value = trigger_value or None
    if (cron_expression is None) == (trigger_type is None):
        raise ValueError("A schedule needs exactly one of cron_expression or trigger_type")

    next_run_at = None
    if cron_expression:
        next_run_at = compute_next_run(cron_expression)
        if next_run_at is None:
            raise InvalidCronError(f"Invalid cron expression: {cron_expression}")

    if trigger_type is not None and trigger_type not in TRIGGER_TYPES:
        raise ValueError(f"Unknown trigger type: {trigger_type}")

    with get_connection(project_dir) as conn:
        cursor = conn.execute(
            """
            INSERT INTO schedules
                (name, description, cron_expression, agent_target, directive, enabled,
                 trigger_type, trigger_value, next_run_at, max_retries)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                name,
                description,
                cron_expression,
                agent_target,
                directive,
                1 if enabled else 0,
                trigger_type,
                trigger_value,
                next_run_at,
                max_retries,
            ),
        )
        schedule_id = int(cursor.lastrowid)

    logger.info("Created schedule #%d (%s)", schedule_id, name)
    return schedule_id


def get_schedule(project_dir: Path | str, schedule_id: int) -> dict[str, Any] | None:
    """Get a schedule by id."""
    with get_connection(project_dir) as conn:
        row = conn.execute("SELECT * FROM schedules WHERE id = ?", (schedule_id,)).fetchone()
        return dict(row) if row else None


def list_schedules(
    project_dir: Path | str,
    enabled: bool | None = None,
    agent_target: str | None = None,
    status: str | None = None,
) -> list[dict[str, Any]]:
    """List schedules ordered by id, with optional filters."""
    conditions = []
    params: list[Any] = []
    if enabled is not None:
        conditions.append("enabled = ?")
        params.append(1 if enabled else 0)
    if agent_target:
        conditions.append("agent_target = ?")
        params.append(agent_target)
    if status:
        conditions.append("status = ?")
        params.append(status)

    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    with get_connection(project_dir) as conn:
        rows = conn.execute(f"SELECT * FROM schedules {where_clause} ORDER BY id", params).fetchall()
        return [dict(row) for row in rows]


def update_schedule(project_dir: Path | str, schedule_id: int, **fields: Any) -> None:
    """Update schedule columns.

    Unknown fields and None values are ignored. ``updated_at`` is always
    refreshed when anything is written.
    """
    updates = {
        k: v for k, v in fields.items()
        if k in ALLOWED_SCHEDULE_FIELDS and v is not None
    }
    if not updates:
        return

    if "enabled" in updates:
        updates["enabled"] = 1 if updates["enabled"] else 0

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [schedule_id]

    with get_connection(project_dir) as conn:
        conn.execute(
            f"UPDATE schedules SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
            values,
        )


def enable_schedule(project_dir: Path | str, schedule_id: int) -> None:
    """Enable a schedule and reset it to idle with a fresh next run."""
    schedule = get_schedule(project_dir, schedule_id)
    if not schedule:
        return

    next_run_at = None
    if schedule["cron_expression"]:
        next_run_at = compute_next_run(schedule["cron_expression"])

    with get_connection(project_dir) as conn:
        conn.execute(
            """
            UPDATE schedules
            SET enabled = 1, status = 'idle', next_run_at = COALESCE(?, next_run_at),
                updated_at = datetime('now')
            WHERE id = ?
            """,
            (next_run_at, schedule_id),
        )


def disable_schedule(project_dir: Path | str, schedule_id: int) -> None:
    """Disable a schedule. next_run_at is kept."""
    with get_connection(project_dir) as conn:
        conn.execute(
            """
            UPDATE schedules
            SET enabled = 0, status = 'paused', updated_at = datetime('now')
            WHERE id = ?
            """,
            (schedule_id,),
        )


def delete_schedule(project_dir: Path | str, schedule_id: int) -> None:
    """Delete a schedule and its execution history."""
    with get_connection(project_dir) as conn:
        conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))


# ---------------------------------------------------------------------------
# Due queries
# ---------------------------------------------------------------------------


def get_due_schedules(project_dir: Path | str, now: datetime | None = None) -> list[dict[str, Any]]:
    """Enabled, non-running schedules whose next run is at or before now.

    Schedules in ``error`` stay eligible. Ordered by next_run_at ascending.
    """
    cutoff = to_db_timestamp(now) if now else utc_now()
    with get_connection(project_dir) as conn:
        rows = conn.execute(
            """
            SELECT * FROM schedules
            WHERE enabled = 1
              AND next_run_at IS NOT NULL
              AND next_run_at <= ?
              AND status != 'running'
            ORDER BY next_run_at ASC, id ASC
            """,
            (cutoff,),
        ).fetchall()
        return [dict(row) for row in rows]


def get_running_schedules(project_dir: Path | str) -> list[dict[str, Any]]:
    """Schedules currently marked running."""
    return list_schedules(project_dir, status="running")


def get_schedules_by_trigger(
    project_dir: Path | str, trigger_type: str, trigger_value: str | None = None
) -> list[dict[str, Any]]:
    """Enabled schedules listening for an event.

    With a trigger_value, a schedule matches when its own value equals it or
    is NULL (listens for every event of that type). Without one, every
    schedule of the type matches.
    """
    params: list[Any] = [trigger_type]
    value_clause = ""
    if trigger_value:
        value_clause = "AND (trigger_value = ? OR trigger_value IS NULL)"
        params.append(trigger_value)

    with get_connection(project_dir) as conn:
        rows = conn.execute(
            f"""
            SELECT * FROM schedules
            WHERE enabled = 1
              AND trigger_type = ?
              {value_clause}
            ORDER BY id
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]


def seconds_overdue(schedule: dict[str, Any], now: datetime) -> float:
    """How long past its next_run_at a schedule is (0 when not yet due)."""
    if not schedule.get("next_run_at"):
        return 0.0
    delta = now.astimezone(timezone.utc) - from_db_timestamp(schedule["next_run_at"])
    return max(delta.total_seconds(), 0.0)


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


def mark_schedule_running(project_dir: Path | str, schedule_id: int, job_id: int) -> None:
    """Record that a job was started for the schedule."""
    with get_connection(project_dir) as conn:
        conn.execute(
            """
            UPDATE schedules
            SET status = 'running', last_job_id = ?, last_run_at = ?,
                run_count = run_count + 1, last_error = NULL,
                updated_at = datetime('now')
            WHERE id = ?
            """,
            (job_id, utc_now(), schedule_id),
        )


def mark_schedule_completed(
    project_dir: Path | str, schedule_id: int, next_run_at: str | None
) -> None:
    """Back to idle with the next run computed by the caller."""
    with get_connection(project_dir) as conn:
        conn.execute(
            """
            UPDATE schedules
            SET status = 'idle', next_run_at = ?, last_error = NULL,
                updated_at = datetime('now')
            WHERE id = ?
            """,
            (next_run_at, schedule_id),
        )


def mark_schedule_failed(
    project_dir: Path | str, schedule_id: int, error: str, next_run_at: str | None
) -> None:
    """Put the schedule in error; it stays eligible at next_run_at."""
    with get_connection(project_dir) as conn:
        conn.execute(
            """
            UPDATE schedules
            SET status = 'error', last_error = ?, next_run_at = ?,
                updated_at = datetime('now')
            WHERE id = ?
            """,
            (error, next_run_at, schedule_id),
        )


def add_schedule_cost(project_dir: Path | str, schedule_id: int, cost_usd: float) -> None:
    """Fold a finished run's cost into the schedule total."""
    with get_connection(project_dir) as conn:
        conn.execute(
            "UPDATE schedules SET total_cost_usd = total_cost_usd + ? WHERE id = ?",
            (cost_usd, schedule_id),
        )


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


def record_execution(
    project_dir: Path | str,
    schedule_id: int,
    job_id: int | None,
    trigger_source: str = "cron",
    status: str = "running",
    error_message: str | None = None,
) -> int:
    """Insert an execution row. Skipped executions are complete on insert.

    Returns:
        The new execution id
    """
    completed_at = utc_now() if status == "skipped" else None
    with get_connection(project_dir) as conn:
        cursor = conn.execute(
            """
            INSERT INTO schedule_executions
                (schedule_id, job_id, trigger_source, status, completed_at, error_message)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (schedule_id, job_id, trigger_source, status, completed_at, error_message),
        )
        return int(cursor.lastrowid)


def update_execution(project_dir: Path | str, execution_id: int, **fields: Any) -> None:
    """Update execution columns (allow-listed, None values skipped)."""
    updates = {
        k: v for k, v in fields.items()
        if k in ALLOWED_EXECUTION_FIELDS and v is not None
    }
    if not updates:
        return

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    with get_connection(project_dir) as conn:
        conn.execute(
            f"UPDATE schedule_executions SET {set_clause} WHERE id = ?",
            list(updates.values()) + [execution_id],
        )


def get_execution_history(
    project_dir: Path | str, schedule_id: int, limit: int = 10
) -> list[dict[str, Any]]:
    """Latest executions of one schedule, newest first."""
    with get_connection(project_dir) as conn:
        rows = conn.execute(
            """
            SELECT * FROM schedule_executions
            WHERE schedule_id = ?
            ORDER BY id DESC LIMIT ?
            """,
            (schedule_id, limit),
        ).fetchall()
        return [dict(row) for row in rows]


def get_all_execution_history(project_dir: Path | str, limit: int = 20) -> list[dict[str, Any]]:
    """Latest executions across schedules, newest first, with schedule names."""
    with get_connection(project_dir) as conn:
        rows = conn.execute(
            """
            SELECT e.*, s.name AS schedule_name
            FROM schedule_executions e
            LEFT JOIN schedules s ON s.id = e.schedule_id
            ORDER BY e.id DESC LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Context rendering
# ---------------------------------------------------------------------------


def _describe_trigger(schedule: dict[str, Any]) -> str:
    if schedule["trigger_value"]:
        return f"{schedule['trigger_type']}:{schedule['trigger_value']}"
    return schedule["trigger_type"]


def format_for_context(project_dir: Path | str) -> str:
    """Render enabled schedules as a text block for the agent.

    Returns an empty string when no schedule is enabled.
    """
    schedules = list_schedules(project_dir, enabled=True)
    if not schedules:
        return ""

    lines = ["## Active Schedules", ""]

    running = [s for s in schedules if s["status"] == "running"]
    if running:
        lines.append("Running now:")
        for s in running:
            lines.append(f"  #{s['id']} {s['name']} (job #{s['last_job_id']}, agent {s['agent_target']})")
        lines.append("")

    upcoming = sorted(
        (s for s in schedules if s["cron_expression"] and s["next_run_at"] and s["status"] != "running"),
        key=lambda s: s["next_run_at"],
    )[:UPCOMING_LIMIT]
    if upcoming:
        lines.append("Upcoming:")
        for s in upcoming:
            line = f"  #{s['id']} {s['name']} [{s['cron_expression']}] next {s['next_run_at']} UTC, agent {s['agent_target']}"
            if s["status"] == "error" and s["last_error"]:
                line += f" (error: {s['last_error']})"
            lines.append(line)
        lines.append("")

    event_triggered = [s for s in schedules if s["trigger_type"]]
    if event_triggered:
        lines.append("Event-triggered:")
        for s in event_triggered:
            lines.append(f"  #{s['id']} {s['name']} on {_describe_trigger(s)}, agent {s['agent_target']}")
        lines.append("")

    lines.append(SCHEDULE_MARKER_HELP)
    return "\n".join(lines)

"""SQLite backend for scheduler state.

One database per project (``.cadence/state.db``) holds the schedule tables,
the background job ledger and a few small supporting tables. Several
processes write to it at once (the daemon, every worker, ad hoc readers), so
each call opens a short-lived connection in WAL mode with a busy timeout.

Scheduling timestamps are naive UTC strings ("YYYY-MM-DD HH:MM:SS") so that
they sort lexically and compare directly with SQLite's datetime('now').
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from .config import get_data_dir, get_database_path


# Schema version for migrations
SCHEMA_VERSION = 1

# Seconds a connection waits on a locked database before giving up
BUSY_TIMEOUT_SECONDS = 5.0

DB_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Keys used in the scheduler_state table
STATE_DAEMON_PID = "daemon_pid"
STATE_DAEMON_HEARTBEAT = "daemon_heartbeat"
STATE_CONNECTION_STATE = "connection_state"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def to_db_timestamp(dt: datetime) -> str:
    """Format a datetime for storage.

    Naive datetimes are taken to be local time.
    """
    return dt.astimezone(timezone.utc).strftime(DB_TIMESTAMP_FORMAT)


def from_db_timestamp(value: str) -> datetime:
    """Parse a stored timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("T", " ").rstrip("Z"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> str:
    """Current time as a stored timestamp."""
    return to_db_timestamp(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Connection + schema
# ---------------------------------------------------------------------------


@contextmanager
def get_connection(project_dir: Path | str) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection with proper settings.

    Configures:
    - WAL mode for concurrent readers and writers
    - a busy timeout for transient lock contention
    - Row factory for dict-like access

    Yields:
        SQLite connection, committed on success and rolled back on error
    """
    conn = sqlite3.connect(get_database_path(project_dir), timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row

    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")

        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def database_exists(project_dir: Path | str) -> bool:
    """Check whether the state database has been created."""
    return get_database_path(project_dir).exists()


def init_schema(project_dir: Path | str) -> None:
    """Initialize the database schema.

    Creates the data directory and all tables if they don't exist.
    Safe to call multiple times.
    """
    get_data_dir(project_dir).mkdir(parents=True, exist_ok=True)

    with get_connection(project_dir) as conn:
        # Background job ledger: one row per worker process
        conn.execute("""
            CREATE TABLE IF NOT EXISTS background_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                directive TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'running'
                    CHECK(status IN ('running', 'completed', 'failed')),
                pid INTEGER,
                started_at TEXT NOT NULL DEFAULT (datetime('now')),
                completed_at TEXT,
                result_summary TEXT,
                error_message TEXT,
                total_cost_usd REAL NOT NULL DEFAULT 0,
                num_turns INTEGER NOT NULL DEFAULT 0,
                duration_ms INTEGER NOT NULL DEFAULT 0
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS background_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER NOT NULL,
                timestamp TEXT NOT NULL DEFAULT (datetime('now')),
                message_type TEXT NOT NULL,
                agent_role TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL,
                FOREIGN KEY (job_id) REFERENCES background_jobs(id)
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_bg_jobs_session ON background_jobs(session_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_bg_jobs_status ON background_jobs(status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_bg_logs_job ON background_logs(job_id)")

        # Schedules: recurring (cron) or event-triggered intent
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schedules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                cron_expression TEXT,
                agent_target TEXT NOT NULL DEFAULT 'ceo',
                directive TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL DEFAULT 'idle'
                    CHECK(status IN ('idle', 'running', 'paused', 'error')),
                trigger_type TEXT
                    CHECK(trigger_type IS NULL OR trigger_type IN
                        ('task_completed', 'project_completed', 'status_change', 'marker')),
                trigger_value TEXT,
                last_run_at TEXT,
                next_run_at TEXT,
                last_job_id INTEGER,
                last_error TEXT,
                run_count INTEGER NOT NULL DEFAULT 0,
                total_cost_usd REAL NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_schedules_enabled ON schedules(enabled)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_schedules_status ON schedules(status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_schedules_next_run ON schedules(next_run_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_schedules_trigger ON schedules(trigger_type)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS schedule_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schedule_id INTEGER NOT NULL,
                job_id INTEGER,
                trigger_source TEXT NOT NULL DEFAULT 'cron'
                    CHECK(trigger_source IN ('cron', 'manual', 'trigger')),
                status TEXT NOT NULL DEFAULT 'running'
                    CHECK(status IN ('running', 'completed', 'failed', 'skipped')),
                started_at TEXT NOT NULL DEFAULT (datetime('now')),
                completed_at TEXT,
                cost_usd REAL NOT NULL DEFAULT 0,
                num_turns INTEGER NOT NULL DEFAULT 0,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                FOREIGN KEY (schedule_id) REFERENCES schedules(id) ON DELETE CASCADE,
                FOREIGN KEY (job_id) REFERENCES background_jobs(id) ON DELETE SET NULL
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_sched_exec_schedule ON schedule_executions(schedule_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sched_exec_status ON schedule_executions(status)")

        # Daemon liveness key/value
        conn.execute("""
            CREATE TABLE IF NOT EXISTS scheduler_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL DEFAULT '',
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)

        # Sessions: the active scheduling session and its external handle
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                started_at TEXT NOT NULL DEFAULT (datetime('now')),
                ended_at TEXT,
                status TEXT NOT NULL DEFAULT 'active'
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS session_data (
                session_id TEXT PRIMARY KEY,
                sdk_session_id TEXT,
                project_dir TEXT,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)

        # Spend per run, summed for the daily cost gate
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cost_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_role TEXT NOT NULL,
                session_id TEXT NOT NULL,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                estimated_cost_usd REAL NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_cost_timestamp ON cost_entries(timestamp)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS agent_status (
                agent_role TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'stopped',
                last_activity TEXT,
                current_task TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_info (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        conn.execute(
            "INSERT OR REPLACE INTO schema_info (key, value) VALUES ('version', ?)",
            (str(SCHEMA_VERSION),),
        )


def get_schema_version(project_dir: Path | str) -> int | None:
    """Get the current schema version, or None if the DB doesn't exist."""
    if not database_exists(project_dir):
        return None

    try:
        with get_connection(project_dir) as conn:
            row = conn.execute("SELECT value FROM schema_info WHERE key = 'version'").fetchone()
            return int(row["value"]) if row else None
    except sqlite3.OperationalError:
        return None


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------

# Columns a caller may change after the job row has been created
ALLOWED_JOB_FIELDS = {
    "status",
    "pid",
    "completed_at",
    "result_summary",
    "error_message",
    "total_cost_usd",
    "num_turns",
    "duration_ms",
}


def create_background_job(project_dir: Path | str, session_id: str, directive: str) -> int:
    """Insert a running job row with no pid yet.

    Returns:
        The new job id
    """
    with get_connection(project_dir) as conn:
        cursor = conn.execute(
            "INSERT INTO background_jobs (session_id, directive, status) VALUES (?, ?, 'running')",
            (session_id, directive),
        )
        return int(cursor.lastrowid)


def get_background_job(project_dir: Path | str, job_id: int) -> dict[str, Any] | None:
    """Get a job by id."""
    with get_connection(project_dir) as conn:
        row = conn.execute("SELECT * FROM background_jobs WHERE id = ?", (job_id,)).fetchone()
        return dict(row) if row else None


def get_latest_running_job(project_dir: Path | str, session_id: str) -> dict[str, Any] | None:
    """Get the most recent job for a session whose row still says running."""
    with get_connection(project_dir) as conn:
        row = conn.execute(
            """
            SELECT * FROM background_jobs
            WHERE session_id = ? AND status = 'running'
            ORDER BY started_at DESC, id DESC LIMIT 1
            """,
            (session_id,),
        ).fetchone()
        return dict(row) if row else None


def list_background_jobs(
    project_dir: Path | str,
    session_id: str | None = None,
    status: str | None = None,
) -> list[dict[str, Any]]:
    """List jobs, newest first, with optional filters."""
    conditions = []
    params: list[Any] = []
    if session_id:
        conditions.append("session_id = ?")
        params.append(session_id)
    if status:
        conditions.append("status = ?")
        params.append(status)

    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    with get_connection(project_dir) as conn:
        rows = conn.execute(
            f"SELECT * FROM background_jobs {where_clause} ORDER BY started_at DESC, id DESC",
            params,
        ).fetchall()
        return [dict(row) for row in rows]


def update_background_job(project_dir: Path | str, job_id: int, **fields: Any) -> None:
    """Update job columns.

    Raises:
        ValueError: if a field is not one of ALLOWED_JOB_FIELDS
    """
    if not fields:
        return

    for key in fields:
        if key not in ALLOWED_JOB_FIELDS:
            raise ValueError(f"Invalid background job field: {key}")

    set_clause = ", ".join(f"{k} = ?" for k in fields)
    values = list(fields.values()) + [job_id]

    with get_connection(project_dir) as conn:
        conn.execute(f"UPDATE background_jobs SET {set_clause} WHERE id = ?", values)


def fail_running_job(project_dir: Path | str, job_id: int, error: str) -> bool:
    """Mark a job failed only if it is still running.

    The status condition makes concurrent callers safe: exactly one of them
    sees a changed row.

    Returns:
        True if this call performed the transition
    """
    with get_connection(project_dir) as conn:
        cursor = conn.execute(
            """
            UPDATE background_jobs
            SET status = 'failed', completed_at = ?, error_message = ?
            WHERE id = ? AND status = 'running'
            """,
            (utc_now(), error, job_id),
        )
        return cursor.rowcount > 0


def log_background_message(
    project_dir: Path | str,
    job_id: int,
    message_type: str,
    agent_role: str,
    content: str,
) -> None:
    """Append one progress line to a job's log."""
    with get_connection(project_dir) as conn:
        conn.execute(
            """
            INSERT INTO background_logs (job_id, message_type, agent_role, content)
            VALUES (?, ?, ?, ?)
            """,
            (job_id, message_type, agent_role, content),
        )


def get_background_logs(
    project_dir: Path | str, job_id: int, limit: int | None = None
) -> list[dict[str, Any]]:
    """Get a job's log lines in insertion order."""
    query = "SELECT * FROM background_logs WHERE job_id = ? ORDER BY id ASC"
    params: list[Any] = [job_id]
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    with get_connection(project_dir) as conn:
        return [dict(row) for row in conn.execute(query, params).fetchall()]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def create_session(project_dir: Path | str, session_id: str) -> None:
    """Register a session as active."""
    with get_connection(project_dir) as conn:
        conn.execute(
            "INSERT OR REPLACE INTO sessions (id, status) VALUES (?, 'active')",
            (session_id,),
        )


def end_session(project_dir: Path | str, session_id: str) -> None:
    """Mark a session as ended."""
    with get_connection(project_dir) as conn:
        conn.execute(
            "UPDATE sessions SET ended_at = datetime('now'), status = 'ended' WHERE id = ?",
            (session_id,),
        )


def get_active_session(project_dir: Path | str) -> str | None:
    """Get the id of the most recently started active session."""
    with get_connection(project_dir) as conn:
        row = conn.execute(
            "SELECT id FROM sessions WHERE status = 'active' ORDER BY started_at DESC LIMIT 1"
        ).fetchone()
        return row["id"] if row else None


def save_session_handle(
    project_dir: Path | str, session_id: str, sdk_session_id: str
) -> None:
    """Bind a local session id to the external resumable session handle."""
    with get_connection(project_dir) as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO session_data (session_id, sdk_session_id, project_dir)
            VALUES (?, ?, ?)
            """,
            (session_id, sdk_session_id, str(project_dir)),
        )


def get_active_session_handle(project_dir: Path | str) -> dict[str, str] | None:
    """Get the active session and its external handle.

    Returns:
        {"session_id": ..., "sdk_session_id": ...} or None when there is no
        active session or it has no handle yet
    """
    session_id = get_active_session(project_dir)
    if not session_id:
        return None

    with get_connection(project_dir) as conn:
        row = conn.execute(
            "SELECT session_id, sdk_session_id FROM session_data WHERE session_id = ?",
            (session_id,),
        ).fetchone()

    if not row or not row["sdk_session_id"]:
        return None
    return {"session_id": row["session_id"], "sdk_session_id": row["sdk_session_id"]}


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------


def record_cost(
    project_dir: Path | str,
    agent_role: str,
    session_id: str,
    cost_usd: float,
    input_tokens: int = 0,
    output_tokens: int = 0,
) -> None:
    """Record the spend of one run."""
    with get_connection(project_dir) as conn:
        conn.execute(
            """
            INSERT INTO cost_entries
                (agent_role, session_id, input_tokens, output_tokens, estimated_cost_usd)
            VALUES (?, ?, ?, ?, ?)
            """,
            (agent_role, session_id, input_tokens, output_tokens, cost_usd),
        )


def get_total_cost_today(project_dir: Path | str) -> float:
    """Sum of recorded spend for the current UTC day."""
    with get_connection(project_dir) as conn:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(estimated_cost_usd), 0) AS total
            FROM cost_entries
            WHERE date(timestamp) = date('now')
            """
        ).fetchone()
        return float(row["total"])


# ---------------------------------------------------------------------------
# Agent status
# ---------------------------------------------------------------------------


def set_agent_status(
    project_dir: Path | str,
    agent_role: str,
    status: str,
    current_task: str | None = None,
) -> None:
    """Set the working/idle/error indicator of an agent."""
    with get_connection(project_dir) as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO agent_status (agent_role, status, last_activity, current_task)
            VALUES (?, ?, datetime('now'), ?)
            """,
            (agent_role, status, current_task),
        )


def get_agent_statuses(project_dir: Path | str) -> list[dict[str, Any]]:
    """List agent indicators ordered by role."""
    with get_connection(project_dir) as conn:
        rows = conn.execute("SELECT * FROM agent_status ORDER BY agent_role").fetchall()
        return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Daemon state
# ---------------------------------------------------------------------------


def get_state_value(project_dir: Path | str, key: str) -> str | None:
    """Read a scheduler_state value (None if missing or unreadable)."""
    try:
        with get_connection(project_dir) as conn:
            row = conn.execute("SELECT value FROM scheduler_state WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None
    except sqlite3.Error:
        return None


def set_state_value(project_dir: Path | str, key: str, value: str) -> None:
    """Write a scheduler_state value."""
    with get_connection(project_dir) as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO scheduler_state (key, value, updated_at)
            VALUES (?, ?, datetime('now'))
            """,
            (key, value),
        )

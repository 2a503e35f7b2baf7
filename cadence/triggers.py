"""Event trigger pipeline.

Agent output is scanned for markers (SCHEDULE:: commands, task and project
completion mentions). Parsed actions are buffered in a ScheduleActionQueue
and applied after a short quiet period, so a burst of streamed messages that
repeat the same event produces a single schedule nudge.
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from .config import ACTION_FLUSH_DELAY_SECONDS, DEFAULT_AGENT_TARGET
from .db import to_db_timestamp
from .errors import CadenceError
from .schedules import (
    create_schedule,
    delete_schedule,
    disable_schedule,
    enable_schedule,
    get_schedules_by_trigger,
    update_schedule,
)

logger = logging.getLogger(__name__)

ActionKind = Literal["create", "enable", "disable", "delete", "trigger"]


@dataclass
class ScheduleAction:
    """One instruction parsed from agent text."""

    kind: ActionKind
    schedule_id: int | None = None
    name: str | None = None
    cron_expression: str | None = None
    trigger_type: str | None = None
    trigger_value: str | None = None
    agent_target: str | None = None
    directive: str | None = None

    @property
    def dedupe_key(self) -> str:
        if self.kind == "trigger":
            return f"trigger:{self.trigger_type}:{self.trigger_value or ''}"
        ident = self.schedule_id if self.schedule_id is not None else self.name
        return f"{ident}:{self.kind}"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_CREATE_RE = re.compile(
    r'SCHEDULE::CREATE\s+name="([^"]+)"'
    r'(?:\s+cron="([^"]*)")?'
    r"(?:\s+trigger=(\S+))?"
    r"(?:\s+agent=(\S+))?"
    r'\s+directive="([^"]+)"'
)
_ID_RE = {
    "enable": re.compile(r"SCHEDULE::ENABLE\s+id=(\d+)"),
    "disable": re.compile(r"SCHEDULE::DISABLE\s+id=(\d+)"),
    "delete": re.compile(r"SCHEDULE::DELETE\s+id=(\d+)"),
}
_TASK_DONE_RE = re.compile(
    r"(?:TASK::UPDATE\s+id=(\d+)\s+status=done|(?:completed?|finished|done with)\s+task\s+#(\d+))",
    re.IGNORECASE,
)
_PROJECT_DONE_RE = re.compile(
    r"\bproject\b(?!_)[^.\n]*?(?<!not )(?<!n't )\b(?:completed|finished|done)\b",
    re.IGNORECASE,
)
# A SCHEDULE:: command with its key=value arguments
_SCHEDULE_MARKER_RE = re.compile(r'SCHEDULE::\w+(?:\s+\w+=(?:"[^"]*"|\S+))*')


def _split_trigger(raw: str) -> tuple[str, str | None]:
    trigger_type, _, value = raw.partition(":")
    return trigger_type, value or None


def parse_schedule_actions(text: str) -> list[ScheduleAction]:
    """Extract schedule actions from a piece of agent text.

    Returns actions in this order: creates, enable/disable/delete, task
    completion triggers, then at most one project completion trigger.
    """
    actions: list[ScheduleAction] = []

    for match in _CREATE_RE.finditer(text):
        name, cron, trigger, agent, directive = match.groups()
        trigger_type, trigger_value = _split_trigger(trigger) if trigger else (None, None)
        actions.append(ScheduleAction(
            kind="create",
            name=name,
            cron_expression=cron or None,
            trigger_type=trigger_type,
            trigger_value=trigger_value,
            agent_target=agent,
            directive=directive,
        ))

    for kind, pattern in _ID_RE.items():
        for match in pattern.finditer(text):
            actions.append(ScheduleAction(kind=kind, schedule_id=int(match.group(1))))

    # Completion phrases are only looked for outside schedule commands
    prose = _SCHEDULE_MARKER_RE.sub(" ", text)

    for match in _TASK_DONE_RE.finditer(prose):
        task_id = match.group(1) or match.group(2)
        actions.append(ScheduleAction(
            kind="trigger", trigger_type="task_completed", trigger_value=task_id,
        ))

    if _PROJECT_DONE_RE.search(prose):
        actions.append(ScheduleAction(
            kind="trigger", trigger_type="project_completed", trigger_value="",
        ))

    return actions


def dedupe_actions(actions: list[ScheduleAction]) -> list[ScheduleAction]:
    """Keep the last action per key, in the order the survivors appeared."""
    last_index = {action.dedupe_key: i for i, action in enumerate(actions)}
    return [action for i, action in enumerate(actions) if last_index[action.dedupe_key] == i]


# ---------------------------------------------------------------------------
# Applying
# ---------------------------------------------------------------------------


def fire_trigger(
    project_dir: Path | str,
    trigger_type: str,
    trigger_value: str | None,
    now: datetime | None = None,
) -> list[int]:
    """Make every matching idle schedule due immediately.

    Returns:
        Ids of the schedules that were nudged
    """
    due_at = to_db_timestamp(now or datetime.now(timezone.utc))
    nudged = []
    for schedule in get_schedules_by_trigger(project_dir, trigger_type, trigger_value or None):
        if schedule["status"] == "running":
            continue
        update_schedule(project_dir, schedule["id"], next_run_at=due_at)
        nudged.append(schedule["id"])
    if nudged:
        logger.info("Trigger %s:%s nudged schedules %s", trigger_type, trigger_value or "", nudged)
    return nudged


def apply_action(project_dir: Path | str, action: ScheduleAction) -> None:
    """Apply one parsed action to the schedule store."""
    if action.kind == "create":
        schedule_id = create_schedule(
            project_dir,
            name=action.name,
            directive=action.directive,
            cron_expression=action.cron_expression,
            agent_target=action.agent_target or DEFAULT_AGENT_TARGET,
            trigger_type=action.trigger_type,
            trigger_value=action.trigger_value,
        )
        print(f"[{datetime.now().isoformat()}] Schedule #{schedule_id} created: {action.name}")
    elif action.kind == "enable":
        enable_schedule(project_dir, action.schedule_id)
    elif action.kind == "disable":
        disable_schedule(project_dir, action.schedule_id)
    elif action.kind == "delete":
        delete_schedule(project_dir, action.schedule_id)
    elif action.kind == "trigger":
        fire_trigger(project_dir, action.trigger_type, action.trigger_value)


class ScheduleActionQueue:
    """Debounced buffer of schedule actions for one project.

    put() arms a single timer if none is pending; when it fires, flush()
    drains the buffer, dedups it and applies each action. Failures of one
    action are logged and do not stop the others.
    """

    def __init__(self, project_dir: Path | str, delay: float = ACTION_FLUSH_DELAY_SECONDS):
        self.project_dir = Path(project_dir)
        self.delay = delay
        self._lock = threading.Lock()
        self._pending: list[ScheduleAction] = []
        self._timer: threading.Timer | None = None

    def put(self, actions: list[ScheduleAction]) -> None:
        if not actions:
            return
        with self._lock:
            self._pending.extend(actions)
            if self._timer is None:
                self._timer = threading.Timer(self.delay, self.flush)
                self._timer.daemon = True
                self._timer.start()

    def pending(self) -> list[ScheduleAction]:
        with self._lock:
            return list(self._pending)

    def flush(self) -> int:
        """Apply everything buffered so far.

        Returns:
            Number of actions applied successfully
        """
        with self._lock:
            batch = self._pending
            self._pending = []
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

        applied = 0
        for action in dedupe_actions(batch):
            try:
                apply_action(self.project_dir, action)
                applied += 1
            except (CadenceError, ValueError) as e:
                logger.warning("Schedule action %s failed: %s", action.dedupe_key, e)
            except Exception:
                logger.exception("Schedule action %s failed", action.dedupe_key)
        return applied

    def close(self) -> None:
        """Cancel the timer and apply what is left."""
        self.flush()

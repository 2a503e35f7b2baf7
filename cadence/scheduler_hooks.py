"""Scheduler registrations with the extension registry.

Importing this module registers the ``scheduler-status`` context provider
and the ``schedule-actions`` message handler. The ``scheduler`` config
section is registered by cadence.config.
"""

import logging
import sqlite3

from .config import get_scheduler_config
from .extensions import ProjectContext, context_provider, message_handler
from .schedules import format_for_context
from .triggers import ScheduleActionQueue, parse_schedule_actions

logger = logging.getLogger(__name__)

ACTION_QUEUE_SERVICE = "schedule-action-queue"


def get_action_queue(ctx: ProjectContext) -> ScheduleActionQueue:
    """The debounced action queue owned by this context."""
    return ctx.get_service(ACTION_QUEUE_SERVICE, lambda: ScheduleActionQueue(ctx.project_dir))


@context_provider("scheduler-status")
def scheduler_status(ctx: ProjectContext) -> str:
    if not get_scheduler_config(ctx.config).enabled:
        return ""
    try:
        return format_for_context(ctx.project_dir)
    except sqlite3.Error as e:
        logger.debug("Scheduler context unavailable: %s", e)
        return ""


@message_handler("schedule-actions")
def schedule_actions(msg: dict, ctx: ProjectContext) -> None:
    """Queue SCHEDULE:: commands and completion triggers from assistant text."""
    if msg.get("type") != "assistant":
        return
    text = msg.get("content") or ""
    actions = parse_schedule_actions(text)
    if actions:
        get_action_queue(ctx).put(actions)

"""Agent invocation service.

The worker hands a directive to an AgentService and gets back a cost/turns
summary. What the directive means is entirely the service's business.
ClaudeCliService is the shipped adapter: it resumes an existing Claude Code
session through the CLI and translates its stream-json output.
"""

import json
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from .errors import AgentInvocationError

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    """One displayable step of an invocation.

    Attributes:
        type: "assistant", "tool_use", "system" or "result"
        content: Human-readable text
        parent_id: Set when the event comes from a nested (sub-agent) call
    """

    type: str
    content: str
    parent_id: str | None = None


@dataclass
class InvocationResult:
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    num_turns: int = 0
    duration_ms: int = 0
    result_text: str = ""


ProgressCallback = Callable[[ProgressEvent], None]


class AgentService(Protocol):
    def invoke(
        self,
        directive: str,
        session_handle: str,
        on_progress: ProgressCallback,
        context: str = "",
    ) -> InvocationResult:
        """Run a directive to completion.

        Raises:
            AgentInvocationError: on failure; no partial result is valid
        """
        ...


# ---------------------------------------------------------------------------
# stream-json translation
# ---------------------------------------------------------------------------


def events_from_message(message: dict[str, Any]) -> list[ProgressEvent]:
    """Translate one stream-json message into progress events."""
    msg_type = message.get("type")
    parent_id = message.get("parent_tool_use_id")

    if msg_type == "assistant":
        events = []
        for block in (message.get("message") or {}).get("content") or []:
            if block.get("type") == "text" and block.get("text", "").strip():
                events.append(ProgressEvent("assistant", block["text"], parent_id))
            elif block.get("type") == "tool_use":
                events.append(ProgressEvent("tool_use", f"Using tool: {block.get('name', '?')}", parent_id))
        return events

    if msg_type == "system" and message.get("subtype") == "init":
        return [ProgressEvent("system", f"Session {message.get('session_id', '')} resumed")]

    if msg_type == "result":
        text = message.get("result") or ""
        return [ProgressEvent("result", text)] if text else []

    return []


def result_from_message(message: dict[str, Any]) -> InvocationResult:
    """Build the invocation summary from the final ``result`` message."""
    usage = message.get("usage") or {}
    return InvocationResult(
        cost_usd=float(message.get("total_cost_usd") or 0.0),
        input_tokens=int(usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("output_tokens") or 0),
        num_turns=int(message.get("num_turns") or 0),
        duration_ms=int(message.get("duration_ms") or 0),
        result_text=message.get("result") or "",
    )


# ---------------------------------------------------------------------------
# Claude CLI adapter
# ---------------------------------------------------------------------------


class ClaudeCliService:
    """Invoke a resumable Claude Code session through the CLI."""

    def __init__(self, command: str = "claude", cwd: str | None = None):
        self.command = command
        self.cwd = cwd

    def build_command(self, session_handle: str, context: str = "") -> list[str]:
        cmd = [
            self.command, "-p",
            "--resume", session_handle,
            "--output-format", "stream-json",
            "--verbose",
        ]
        if context:
            cmd.extend(["--append-system-prompt", context])
        return cmd

    def invoke(
        self,
        directive: str,
        session_handle: str,
        on_progress: ProgressCallback,
        context: str = "",
    ) -> InvocationResult:
        cmd = self.build_command(session_handle, context)
        logger.debug("Invoking agent: %s", " ".join(cmd[:5]))
        started = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=self.cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise AgentInvocationError(f"Cannot start {self.command}: {e}") from e

        stderr_chunks: list[str] = []

        def read_stderr():
            for line in proc.stderr:
                stderr_chunks.append(line)

        t_err = threading.Thread(target=read_stderr, daemon=True)
        t_err.start()

        # Directive goes through stdin so it never shows up in the process list
        try:
            proc.stdin.write(directive)
            proc.stdin.close()
        except BrokenPipeError:
            pass

        final: dict[str, Any] | None = None
        try:
            for line in proc.stdout:
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON output line: %s", line[:200])
                    continue
                for event in events_from_message(message):
                    on_progress(event)
                if message.get("type") == "result":
                    final = message
            proc.wait()
        except BaseException:
            # Interrupted (worker stopped): take the agent process down with us
            proc.kill()
            proc.wait()
            raise

        t_err.join(timeout=5)
        stderr = "".join(stderr_chunks)

        if final is not None and final.get("is_error"):
            raise AgentInvocationError(final.get("result") or f"Agent run failed ({final.get('subtype', 'error')})")
        if proc.returncode != 0:
            raise AgentInvocationError(
                f"{self.command} exited with code {proc.returncode}: {stderr.strip()[:500]}"
            )
        if final is None:
            raise AgentInvocationError(f"{self.command} produced no result message")

        result = result_from_message(final)
        if not result.duration_ms:
            result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

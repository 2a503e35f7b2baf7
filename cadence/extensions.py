"""Registration points shared by the scheduler and its peer subsystems.

Three kinds of registration are supported:

  config extension: a top-level section of config.yaml with defaults and
                    a validator, merged by config.load_config()
  context provider: returns text describing current state, shown to the
                    agent invocation service before a directive runs
  message handler:  sees every streamed agent message and reacts to
                    markers embedded in the text

Hooks receive an explicit ProjectContext built by the caller for one
request or one daemon tick. Nothing here remembers which project was seen
last.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class ProjectContext:
    """Project scope passed to every hook.

    Attributes:
        project_dir: Root of the project that owns the state database.
        config: Fully merged configuration dict from config.load_config().
        services: Per-context objects created lazily by hooks (for example
                  the debounced schedule action queue). Owned by this
                  context, closed by close().
    """

    project_dir: Path
    config: dict[str, Any]
    services: dict[str, Any] = field(default_factory=dict)

    def get_service(self, name: str, factory: Callable[[], Any]) -> Any:
        """Return the named per-context service, creating it on first use."""
        if name not in self.services:
            self.services[name] = factory()
        return self.services[name]

    def close(self) -> None:
        """Close every service that supports it (flushes pending work)."""
        for name, service in list(self.services.items()):
            closer = getattr(service, "close", None)
            if closer is None:
                continue
            try:
                closer()
            except Exception:
                logger.exception("Failed to close service %s", name)
        self.services.clear()


@dataclass
class ConfigExtension:
    key: str
    defaults: dict[str, Any]
    validate: Callable[[Any], list[str]] | None = None


ContextProvider = Callable[[ProjectContext], str]
MessageHandler = Callable[[dict, ProjectContext], None]

CONFIG_EXTENSIONS: dict[str, ConfigExtension] = {}
CONTEXT_PROVIDERS: dict[str, ContextProvider] = {}
MESSAGE_HANDLERS: dict[str, MessageHandler] = {}


def register_config_extension(
    key: str,
    defaults: dict[str, Any],
    validate: Callable[[Any], list[str]] | None = None,
) -> None:
    """Register a config.yaml section (re-registering replaces it)."""
    CONFIG_EXTENSIONS[key] = ConfigExtension(key=key, defaults=dict(defaults), validate=validate)


def context_provider(name: str) -> Callable[[ContextProvider], ContextProvider]:
    """Decorator: register a context provider under name."""

    def decorator(func: ContextProvider) -> ContextProvider:
        CONTEXT_PROVIDERS[name] = func
        return func

    return decorator


def message_handler(name: str) -> Callable[[MessageHandler], MessageHandler]:
    """Decorator: register a message handler under name."""

    def decorator(func: MessageHandler) -> MessageHandler:
        MESSAGE_HANDLERS[name] = func
        return func

    return decorator


def collect_context(ctx: ProjectContext) -> str:
    """Run every context provider and join the non-empty sections."""
    sections = []
    for name, provider in CONTEXT_PROVIDERS.items():
        try:
            text = provider(ctx)
        except Exception as e:
            logger.warning("Context provider %s failed: %s", name, e)
            continue
        if text:
            sections.append(text)
    return "\n\n".join(sections)


def dispatch_message(msg: dict, ctx: ProjectContext) -> None:
    """Feed one streamed message to every handler.

    A failing handler is logged and skipped so the others still run.
    """
    for name, handler in MESSAGE_HANDLERS.items():
        try:
            handler(msg, ctx)
        except Exception as e:
            logger.warning("Message handler %s failed: %s", name, e)

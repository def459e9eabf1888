"""Notification emission for session events.

The session reconciler reports user-facing events (a sub-agent started or
finished, a stream error, the end of a reply) through a SessionEmitter.
Where they end up depends on the caller:

- NullEmitter: discards everything (library use, tests)
- LoggingEmitter: logs notifications
- CLIEmitter: prints them to the terminal
- CallbackEmitter: forwards to an async callback
- CompositeEmitter: fans out to several emitters

Emitters are best-effort: a failing emitter never breaks the session.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger(__name__)


@runtime_checkable
class SessionEmitter(Protocol):
    """Protocol for emitting session notifications."""

    async def emit(
        self,
        message: str,
        update_type: str = "progress",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Emit a notification.

        Args:
            message: Human-readable notification text
            update_type: Category of the notification (e.g., "subagent_start",
                        "subagent_complete", "subagent_failed", "error",
                        "stream_end")
            metadata: Optional additional data (e.g., sub-agent id, thread id)
        """
        ...


class NullEmitter:
    """No-op emitter that discards all notifications."""

    async def emit(
        self,
        message: str,
        update_type: str = "progress",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass


class LoggingEmitter:
    """Emitter that logs notifications. Useful for debugging."""

    def __init__(self, logger_name: str = __name__, level: int = logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self._level = level

    async def emit(
        self,
        message: str,
        update_type: str = "progress",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        level = logging.ERROR if update_type == "error" else self._level
        self._logger.log(level, f"[{update_type}] {message}")


class CLIEmitter:
    """Emitter that prints notifications to the terminal."""

    # Symbols and styles for different update types
    TYPE_STYLES = {
        "subagent_start": ("🤖", "cyan"),
        "subagent_complete": ("✅", "green"),
        "subagent_failed": ("❌", "yellow"),
        "stream_end": ("•", "dim"),
        "error": ("❌", "red"),
    }

    def __init__(self, console: Optional[Console] = None):
        self._console = console or Console(file=sys.stderr)

    async def emit(
        self,
        message: str,
        update_type: str = "progress",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        symbol, style = self.TYPE_STYLES.get(update_type, ("→", "dim"))
        self._console.print(f"{symbol} [{style}]{escape(message)}[/{style}]", highlight=False)


class CallbackEmitter:
    """Emitter that forwards notifications to an async callback."""

    def __init__(
        self,
        callback: Callable[[str, str, Optional[Dict[str, Any]]], Awaitable[None]],
    ):
        self._callback = callback

    async def emit(
        self,
        message: str,
        update_type: str = "progress",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._callback(message, update_type, metadata)


class CompositeEmitter:
    """Emitter that forwards notifications to multiple child emitters."""

    def __init__(self, emitters: List[SessionEmitter]):
        self._emitters = emitters

    async def emit(
        self,
        message: str,
        update_type: str = "progress",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._emitters:
            return

        await asyncio.gather(
            *[e.emit(message, update_type, metadata) for e in self._emitters],
            return_exceptions=True,  # Don't fail if one emitter fails
        )


async def safe_emit(
    emitter: SessionEmitter,
    message: str,
    update_type: str = "progress",
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Emit without ever raising into the caller."""
    try:
        await emitter.emit(message, update_type, metadata)
    except Exception as e:
        logger.warning(f"Failed to emit session notification: {e}")


def create_emitter(
    *,
    cli: bool = False,
    console: Optional[Console] = None,
    log: bool = False,
    additional_emitters: Optional[List[SessionEmitter]] = None,
) -> SessionEmitter:
    """Create the emitter for the calling context.

    Examples:
        # Library use
        emitter = create_emitter()

        # Interactive chat
        emitter = create_emitter(cli=True)
    """
    emitters: List[SessionEmitter] = []

    if cli:
        emitters.append(CLIEmitter(console=console))

    if log:
        emitters.append(LoggingEmitter())

    if additional_emitters:
        emitters.extend(additional_emitters)

    if not emitters:
        return NullEmitter()
    elif len(emitters) == 1:
        return emitters[0]
    else:
        return CompositeEmitter(emitters)

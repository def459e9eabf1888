"""Progressive reveal of assistant text.

The agent delivers whole message snapshots, not tokens. To make a reply
appear as it is produced, the latest text is revealed a few characters per
timer tick. A scheduler is a small state machine::

    idle --set_target--> revealing --prefix == target--> settled
                            |   ^
                            |   +-- set_target (restart from empty prefix)
                            +------ cancel --> settled (prefix kept)

At most one timer task exists per scheduler. ``set_target`` cancels the
running task before starting the next one, and every tick checks a
generation counter so a tick from a superseded target can never advance
the new one.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from coach_stream.core.config import settings

logger = logging.getLogger(__name__)


class RevealState(str, Enum):
    IDLE = "idle"
    REVEALING = "revealing"
    SETTLED = "settled"


class RevealScheduler:
    """Reveals a target text by a fixed number of characters per tick."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        interval: Optional[float] = None,
        on_update: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            chunk_size: Characters revealed per tick (defaults to settings)
            interval: Seconds between ticks (defaults to settings)
            on_update: Called with the visible text after every change
        """
        self.chunk_size = max(1, chunk_size or settings.reveal_chunk_size)
        self.interval = (
            interval if interval is not None else settings.reveal_interval_ms / 1000
        )
        self._on_update = on_update
        self._target = ""
        self._revealed = 0
        self._state = RevealState.IDLE
        self._generation = 0
        self._timer: Optional[asyncio.Task] = None

    @property
    def state(self) -> RevealState:
        return self._state

    @property
    def target(self) -> str:
        return self._target

    @property
    def revealed_length(self) -> int:
        return self._revealed

    @property
    def visible_text(self) -> str:
        return self._target[: self._revealed]

    @property
    def is_active(self) -> bool:
        return self._state == RevealState.REVEALING

    def set_target(self, text: str) -> None:
        """Replace the text to reveal and restart from an empty prefix."""
        self._stop_timer()
        self._generation += 1
        self._target = text or ""
        self._revealed = 0

        if not self._target:
            self._state = RevealState.SETTLED
            self._notify()
            return

        self._state = RevealState.REVEALING
        self._notify()
        self._timer = asyncio.get_running_loop().create_task(self._run(self._generation))

    def cancel(self) -> None:
        """Stop revealing immediately, keeping the current prefix."""
        self._stop_timer()
        self._generation += 1
        if self._state == RevealState.REVEALING:
            self._state = RevealState.SETTLED

    def reset(self) -> None:
        """Stop revealing and forget the target."""
        self.cancel()
        self._target = ""
        self._revealed = 0
        self._state = RevealState.IDLE

    async def wait_settled(self) -> None:
        """Wait until the active reveal finishes or is cancelled."""
        timer = self._timer
        if timer is None:
            return
        try:
            await asyncio.shield(timer)
        except asyncio.CancelledError:
            if not timer.cancelled():
                raise

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _notify(self) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(self.visible_text)
        except Exception as e:
            logger.warning(f"Reveal update callback failed: {e}")

    async def _run(self, generation: int) -> None:
        try:
            while self._revealed < len(self._target):
                await asyncio.sleep(self.interval)
                if generation != self._generation:
                    return
                self._revealed = min(self._revealed + self.chunk_size, len(self._target))
                self._notify()
            self._state = RevealState.SETTLED
        finally:
            if generation == self._generation:
                self._timer = None

"""Debounced, last-write-wins persistence of thread snapshots.

Deltas can arrive many times per second while a reply streams in. Writing a
full snapshot on each one would hammer the store, so saves are debounced per
thread: a burst of ``schedule_save`` calls inside the quiet window produces a
single write of the latest snapshot. The terminal commit of an exchange uses
``save_now`` instead, which drops the pending debounce and writes at once.

Ordering:
    - Snapshots are stamped with a strictly increasing ``updated_at`` per thread.
    - Writes for one thread are serialized by a per-thread lock, and a snapshot
      that is not newer than the last written one is skipped.
    - Different threads are independent of each other.

Store failures are logged and reported as False; they never propagate into the
session, whose in-memory state stays authoritative.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from coach_stream.core.config import settings
from coach_stream.core.threads import ChatThread, ThreadStore, now_ms

logger = logging.getLogger(__name__)


class ThreadSaveScheduler:
    """Schedules thread snapshot writes against a ThreadStore."""

    def __init__(self, store: ThreadStore, debounce_seconds: Optional[float] = None):
        self._store = store
        self.debounce_seconds = (
            debounce_seconds
            if debounce_seconds is not None
            else settings.save_debounce_ms / 1000
        )
        self._pending: Dict[str, ChatThread] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._last_stamp: Dict[str, int] = {}
        self._last_written: Dict[str, int] = {}
        self.write_count = 0

    @property
    def store(self) -> ThreadStore:
        return self._store

    def has_pending(self, thread_id: Optional[str] = None) -> bool:
        if thread_id is None:
            return bool(self._pending)
        return thread_id in self._pending

    def _snapshot(self, thread: ChatThread) -> ChatThread:
        """Deep copy of the thread with a fresh, strictly increasing updated_at."""
        stamp = max(now_ms(), self._last_stamp.get(thread.id, 0) + 1)
        self._last_stamp[thread.id] = stamp
        return thread.model_copy(deep=True, update={"updated_at": stamp})

    def schedule_save(self, thread: ChatThread) -> None:
        """Debounce a save of the thread's current state."""
        self._pending[thread.id] = self._snapshot(thread)
        self._cancel_timer(thread.id)
        self._timers[thread.id] = asyncio.get_running_loop().create_task(
            self._delayed_write(thread.id)
        )

    async def save_now(self, thread: ChatThread) -> bool:
        """Write the thread immediately, superseding any pending debounce."""
        self._cancel_timer(thread.id)
        self._pending.pop(thread.id, None)
        return await self._write(self._snapshot(thread))

    async def flush(self) -> None:
        """Write every pending snapshot now."""
        for thread_id in list(self._pending):
            self._cancel_timer(thread_id)
            snapshot = self._pending.pop(thread_id, None)
            if snapshot is not None:
                await self._write(snapshot)

    async def aclose(self) -> None:
        await self.flush()

    def _cancel_timer(self, thread_id: str) -> None:
        timer = self._timers.pop(thread_id, None)
        if timer is not None:
            timer.cancel()

    async def _delayed_write(self, thread_id: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # Detach before writing so a new schedule_save cannot cancel an in-flight write
        if self._timers.get(thread_id) is asyncio.current_task():
            del self._timers[thread_id]
        snapshot = self._pending.pop(thread_id, None)
        if snapshot is not None:
            await self._write(snapshot)

    async def _write(self, snapshot: ChatThread) -> bool:
        lock = self._locks.setdefault(snapshot.id, asyncio.Lock())
        async with lock:
            last = self._last_written.get(snapshot.id)
            if last is not None and snapshot.updated_at <= last:
                logger.debug(f"Skipping out-of-date snapshot for thread {snapshot.id}")
                return False
            try:
                written = await self._store.save_thread(snapshot)
            except Exception as e:
                logger.error(f"Failed to persist thread {snapshot.id}: {e}")
                return False
            if written:
                self._last_written[snapshot.id] = snapshot.updated_at
                self.write_count += 1
            else:
                logger.warning(f"Thread {snapshot.id} was not persisted")
            return written

"""Event framing for streamed agent responses.

The agent answers a stream request with a server-sent-events body. Chunks
arrive with arbitrary boundaries: one chunk may hold a fragment of a record,
several records, or both. ``EventFramer`` buffers decoded text across chunks
and only emits a record once its terminating blank line has been seen.

Example:
    framer = EventFramer()
    for chunk in chunks:
        for record in framer.feed(chunk):
            handle(record)
    for record in framer.flush():
        handle(record)
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
from enum import Enum
from typing import AsyncIterable, AsyncIterator, List, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# Blank-line record separators, one per line-ending convention
SEPARATORS = ("\r\n\r\n", "\n\n")

DEFAULT_EVENT = "message"

_LINE_SPLIT = re.compile(r"\r?\n")


class EventKind(str, Enum):
    DATA = "data"
    METADATA = "metadata"
    ERROR = "error"
    END = "end"
    UNKNOWN = "unknown"


_KIND_BY_EVENT = {
    "data": EventKind.DATA,
    DEFAULT_EVENT: EventKind.DATA,
    "metadata": EventKind.METADATA,
    "error": EventKind.ERROR,
    "end": EventKind.END,
}


class EventRecord(BaseModel):
    """One complete event parsed out of the stream."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    event: str = DEFAULT_EVENT
    payload: str = ""


def parse_event_record(text: str) -> Optional[EventRecord]:
    """Parse the raw text of one record.

    Field names are matched case-insensitively. ``event:`` sets the event name,
    every ``data:`` line contributes one payload line. Anything else (comments,
    ``id:``, ``retry:``, garbage) is ignored. A record without data lines
    yields None.
    """
    event = DEFAULT_EVENT
    data_lines: List[str] = []

    for line in _LINE_SPLIT.split(text):
        stripped = line.strip()
        field, sep, value = stripped.partition(":")
        if not sep:
            continue
        field = field.lower()
        if field == "event":
            event = value.strip() or DEFAULT_EVENT
        elif field == "data":
            data_lines.append(value.strip())

    if not data_lines:
        return None

    kind = _KIND_BY_EVENT.get(event.lower(), EventKind.UNKNOWN)
    return EventRecord(kind=kind, event=event, payload="\n".join(data_lines))


def _next_boundary(buffer: str) -> Optional[tuple[int, int]]:
    """Earliest record boundary in the buffer as (index, separator length)."""
    found: Optional[tuple[int, int]] = None
    for separator in SEPARATORS:
        index = buffer.find(separator)
        if index != -1 and (found is None or index < found[0]):
            found = (index, len(separator))
    return found


class EventFramer:
    """Reassembles raw byte chunks into complete event records."""

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self.record_count = 0

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> List[EventRecord]:
        """Add a chunk and return every record it completed, in order."""
        if isinstance(chunk, bytes):
            self._buffer += self._decoder.decode(chunk)
        else:
            self._buffer += chunk

        records: List[EventRecord] = []
        while True:
            boundary = _next_boundary(self._buffer)
            if boundary is None:
                break
            index, length = boundary
            raw = self._buffer[:index]
            self._buffer = self._buffer[index + length :]
            if not raw.strip():
                continue
            record = parse_event_record(raw)
            if record is not None:
                records.append(record)

        self.record_count += len(records)
        return records

    def flush(self) -> List[EventRecord]:
        """Parse whatever is left once the stream has ended.

        Senders may omit the final blank line, so the tail is split with the
        same separator logic and every non-empty part is parsed.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        if not remaining.strip():
            return []

        records: List[EventRecord] = []
        while remaining:
            boundary = _next_boundary(remaining)
            if boundary is None:
                raw, remaining = remaining, ""
            else:
                index, length = boundary
                raw, remaining = remaining[:index], remaining[index + length :]
            if not raw.strip():
                continue
            record = parse_event_record(raw)
            if record is not None:
                records.append(record)

        self.record_count += len(records)
        return records


async def iter_event_records(
    chunks: AsyncIterable[bytes],
    cancel_event: Optional[asyncio.Event] = None,
) -> AsyncIterator[EventRecord]:
    """Yield event records from an async stream of byte chunks.

    Buffered records are drained before the next chunk is requested. When
    ``cancel_event`` is set, iteration stops quietly and the tail is not
    flushed. Transport errors raised by ``chunks`` propagate to the caller.
    """
    framer = EventFramer()

    async for chunk in chunks:
        if cancel_event is not None and cancel_event.is_set():
            logger.debug("Stream cancelled, abandoning read")
            return
        for record in framer.feed(chunk):
            yield record
            if cancel_event is not None and cancel_event.is_set():
                return

    if cancel_event is not None and cancel_event.is_set():
        return

    for record in framer.flush():
        yield record

    logger.debug(
        f"Stream complete. Processed {framer.record_count} events. "
        f"Buffer remaining: {len(framer.buffered)} chars"
    )

"""Stream pipeline: transport -> framer -> dispatcher.

``stream_agent`` runs one streamed exchange and maps its outcome onto the
callback contract:

- every record is dispatched in arrival order, each awaited before the next
  chunk is read
- an ``end`` record finishes the exchange; anything after it is not read
- a stream that closes without ``end`` still gets exactly one ``on_end``
- transport failures are delivered as ``on_error(TransportError)``
- cancellation propagates as ``asyncio.CancelledError`` and triggers no
  callback at all
"""

import asyncio
import logging
from typing import List, Optional

import httpx

from coach_stream.core.agent_client import AgentClient
from coach_stream.core.dispatch import StreamCallbacks, dispatch_record
from coach_stream.core.exceptions import TransportError
from coach_stream.core.framing import EventKind, iter_event_records
from coach_stream.core.threads import Message

logger = logging.getLogger(__name__)


async def stream_agent(
    client: AgentClient,
    thread_id: str,
    messages: List[Message],
    callbacks: StreamCallbacks,
    cancel_event: Optional[asyncio.Event] = None,
) -> int:
    """Run one streamed exchange. Returns the number of records dispatched."""
    dispatched = 0
    try:
        async with client.open_stream(thread_id, messages) as chunks:
            async for record in iter_event_records(chunks, cancel_event):
                dispatched += 1
                await dispatch_record(record, callbacks)
                if record.kind == EventKind.END:
                    logger.debug(f"Stream for thread {thread_id} ended after {dispatched} records")
                    return dispatched

    except TransportError as e:
        await callbacks.on_error(e)
        return dispatched
    except httpx.HTTPError as e:
        logger.error(f"Stream for thread {thread_id} failed: {e}")
        await callbacks.on_error(TransportError(f"Stream failed: {e}"))
        return dispatched

    if cancel_event is not None and cancel_event.is_set():
        logger.debug(f"Stream for thread {thread_id} abandoned after cancellation")
        return dispatched

    logger.debug(f"Stream for thread {thread_id} closed without an end event")
    await callbacks.on_end()
    return dispatched

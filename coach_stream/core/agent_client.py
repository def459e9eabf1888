"""HTTP client for the remote agent.

Three calls are used:

- ``POST {agent_url}/stream``: streamed run, answered with an event stream
- ``POST {agent_url}/invoke``: one-shot run, answered with JSON
- ``GET {agent_url}/threads/{id}/state``: the agent's own view of a thread

Both run endpoints take the same body::

    {"input": {"messages": [...]}, "configurable": {"thread_id": "..."}}
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from coach_stream.core.config import settings
from coach_stream.core.dispatch import extract_files, extract_messages, extract_todos
from coach_stream.core.exceptions import TransportError
from coach_stream.core.threads import Message, ThreadSnapshot

logger = logging.getLogger(__name__)


def to_wire_message(message: Message) -> Dict[str, Any]:
    """LangChain-shaped dict for one message."""
    wire: Dict[str, Any] = {"type": message.role.value, "content": message.content}
    if message.id:
        wire["id"] = message.id
    if message.name:
        wire["name"] = message.name
    if message.tool_call_id:
        wire["tool_call_id"] = message.tool_call_id
    if message.tool_calls:
        wire["tool_calls"] = [call.model_dump() for call in message.tool_calls]
    if message.status:
        wire["status"] = message.status
    return wire


def to_wire_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    return [to_wire_message(m) for m in messages]


def build_request_body(thread_id: str, messages: List[Message]) -> Dict[str, Any]:
    return {
        "input": {"messages": to_wire_messages(messages)},
        "configurable": {"thread_id": thread_id},
    }


class AgentClient:
    """Async client for the agent service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.agent_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.agent_timeout
        if api_key is None and settings.agent_api_key is not None:
            api_key = settings.agent_api_key.get_secret_value()
        self._api_key = api_key
        self._transport = transport
        self._http_client = http_client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client (lazy initialization)."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers(),
                transport=self._transport,
            )
        return self._http_client

    @asynccontextmanager
    async def open_stream(
        self, thread_id: str, messages: List[Message]
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a streamed run and yield its raw byte chunks.

        Raises:
            TransportError: If the agent answers with an error status
        """
        client = self._get_client()
        body = build_request_body(thread_id, messages)
        logger.info(f"Opening stream for thread {thread_id} ({len(messages)} messages)")

        async with client.stream("POST", "/stream", json=body) as response:
            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", errors="replace")
                logger.error(f"Agent stream failed: HTTP {response.status_code} {detail[:200]}")
                raise TransportError(
                    f"Agent request failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            yield response.aiter_bytes()

    async def invoke(self, thread_id: str, messages: List[Message]) -> Dict[str, Any]:
        """Run the agent once and return its JSON result."""
        client = self._get_client()
        try:
            resp = await client.post(
                "/invoke",
                json=build_request_body(thread_id, messages),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Agent request failed: {e}") from e
        if resp.status_code >= 400:
            raise TransportError(
                f"Agent request failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp.json()

    async def get_thread_state(self, thread_id: str) -> ThreadSnapshot:
        """The agent's state for a thread; an empty snapshot if it has none."""
        client = self._get_client()
        try:
            resp = await client.get(
                f"/threads/{thread_id}/state", headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Thread state request failed: {e}") from e

        if resp.status_code == 404:
            logger.debug(f"Agent has no state for thread {thread_id}")
            return ThreadSnapshot()
        if resp.status_code >= 400:
            raise TransportError(
                f"Thread state request failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        data = resp.json()
        values = data.get("values") if isinstance(data, dict) else None
        if not isinstance(values, dict):
            return ThreadSnapshot()
        return ThreadSnapshot(
            todos=extract_todos(values.get("todos")) or [],
            files=extract_files(values.get("files")) or {},
            messages=extract_messages(values.get("messages")),
        )

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

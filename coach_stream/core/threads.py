"""Thread state management for agent conversations.

A ChatThread is the canonical state of one conversation: the message log, the
agent's todo list, the files it generated and the sub-agent tasks it
delegated. Threads are persisted to Redis as full snapshots; a sorted-set
index (scored by ``updated_at``) and a summaries hash back the thread list.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field
from redis.asyncio import Redis
from ulid import ULID

from coach_stream.core.config import settings
from coach_stream.core.keys import RedisKeys
from coach_stream.core.redis import get_redis_client

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 50
UNTITLED = "Untitled conversation"


def now_ms() -> int:
    """Current UTC time as integer epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def new_id() -> str:
    return str(ULID())


class MessageRole(str, Enum):
    HUMAN = "human"
    AI = "ai"
    SYSTEM = "system"
    TOOL = "tool"


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SubAgentStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    ACTING = "acting"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolCall(BaseModel):
    """A tool invocation requested by an assistant message."""

    id: Optional[str] = None
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """A single message in a thread conversation.

    The wire format (LangChain message dicts) carries the role as ``type``;
    both ``type`` and ``role`` are accepted when validating.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    role: MessageRole = Field(alias="type")
    content: str = ""
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    status: Optional[str] = None
    timestamp: Optional[int] = None

    @property
    def has_text(self) -> bool:
        return bool(self.content and self.content.strip())


class TodoItem(BaseModel):
    """An item of the agent's task list. Identity is the id."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    content: str = ""
    status: TodoStatus = TodoStatus.PENDING
    created_at: Optional[int] = Field(default=None, alias="createdAt")
    updated_at: Optional[int] = Field(default=None, alias="updatedAt")


class FileType(str, Enum):
    CODE = "code"
    MARKDOWN = "markdown"
    JSON = "json"
    TEXT = "text"


_CODE_EXTENSIONS = {"ts", "tsx", "js", "jsx", "py", "java", "cpp", "c"}
_MARKDOWN_EXTENSIONS = {"md", "mdx"}


def _extension(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


class FileItem(BaseModel):
    """A generated file, with type and language derived from its path."""

    path: str
    content: str = ""
    type: FileType = FileType.TEXT
    language: str = "text"
    size: int = 0

    @classmethod
    def from_path(cls, path: str, content: str) -> "FileItem":
        ext = _extension(path)
        if ext in _CODE_EXTENSIONS:
            file_type = FileType.CODE
        elif ext in _MARKDOWN_EXTENSIONS:
            file_type = FileType.MARKDOWN
        elif ext == "json":
            file_type = FileType.JSON
        else:
            file_type = FileType.TEXT
        return cls(
            path=path,
            content=content,
            type=file_type,
            language=ext or "text",
            size=len(content.encode("utf-8")),
        )


class SubAgentStep(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str
    status: StepStatus = StepStatus.PENDING
    timestamp: int = Field(default_factory=now_ms)
    output: Optional[str] = None


class SubAgentTask(BaseModel):
    """A unit of work delegated by the agent, keyed by the tool-call id."""

    id: str
    name: str
    status: SubAgentStatus = SubAgentStatus.IDLE
    steps: List[SubAgentStep] = Field(default_factory=list)
    progress: int = 0
    start_time: int = Field(default_factory=now_ms)
    end_time: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SubAgentStatus.COMPLETED, SubAgentStatus.FAILED)


def derive_title(messages: List[Message]) -> Optional[str]:
    """Title from the first human message, truncated to TITLE_MAX_LENGTH chars."""
    for message in messages:
        if message.role == MessageRole.HUMAN and message.has_text:
            text = message.content.strip()
            return text[:TITLE_MAX_LENGTH].strip() + (
                "..." if len(text) > TITLE_MAX_LENGTH else ""
            )
    return None


class ChatThread(BaseModel):
    """Complete conversation state.

    Owned by the session reconciler while a session is active; the store only
    ever receives full snapshots of it.
    """

    id: str = Field(default_factory=new_id)
    messages: List[Message] = Field(default_factory=list)
    todos: List[TodoItem] = Field(default_factory=list)
    files: Dict[str, str] = Field(default_factory=dict)
    sub_agents: List[SubAgentTask] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    title: Optional[str] = None

    def has_message(self, message_id: Optional[str]) -> bool:
        if not message_id:
            return False
        return any(m.id == message_id for m in self.messages)

    def append_message(self, message: Message) -> bool:
        """Append a message unless its id is already in the log."""
        if self.has_message(message.id):
            logger.debug(f"Dropping duplicate message {message.id} in thread {self.id}")
            return False
        self.messages.append(message)
        return True

    def find_todo(self, todo_id: str) -> Optional[TodoItem]:
        return next((t for t in self.todos if t.id == todo_id), None)

    def find_sub_agent(self, task_id: str) -> Optional[SubAgentTask]:
        return next((a for a in self.sub_agents if a.id == task_id), None)

    def display_title(self) -> str:
        return self.title or derive_title(self.messages) or UNTITLED


class ThreadSummary(BaseModel):
    """Entry of the thread index."""

    id: str
    title: str = UNTITLED
    message_count: int = 0
    updated_at: int = 0

    @classmethod
    def from_thread(cls, thread: ChatThread) -> "ThreadSummary":
        return cls(
            id=thread.id,
            title=thread.display_title(),
            message_count=len(thread.messages),
            updated_at=thread.updated_at,
        )


class ThreadSnapshot(BaseModel):
    """The ``{todos, files, messages}`` shape returned by thread-state lookups."""

    todos: List[TodoItem] = Field(default_factory=list)
    files: Dict[str, str] = Field(default_factory=dict)
    messages: List[Message] = Field(default_factory=list)

    @classmethod
    def from_thread(cls, thread: ChatThread) -> "ThreadSnapshot":
        return cls(todos=thread.todos, files=thread.files, messages=thread.messages)

    def file_items(self) -> List[FileItem]:
        return [FileItem.from_path(path, content) for path, content in sorted(self.files.items())]


@runtime_checkable
class ThreadStore(Protocol):
    """Durable store for full thread snapshots."""

    async def save_thread(self, thread: ChatThread) -> bool:
        """Persist a snapshot. Returns True if it was written."""
        ...

    async def get_thread(self, thread_id: str) -> Optional[ChatThread]: ...

    async def set_current_thread_id(self, thread_id: str) -> bool: ...


def _decode(value: Any) -> Any:
    return value.decode() if isinstance(value, bytes) else value


class ThreadManager:
    """Manages thread state in Redis."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[Redis] = None,
        index_max: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self._redis_url = redis_url
        self._redis_client = redis_client
        self._index_max = index_max if index_max is not None else settings.thread_index_max
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.thread_ttl_seconds

    async def _get_client(self) -> Redis:
        """Get Redis client (lazy initialization)."""
        if self._redis_client is None:
            self._redis_client = get_redis_client(self._redis_url)
        return self._redis_client

    async def save_thread(self, thread: ChatThread) -> bool:
        """Save a full thread snapshot and upsert its index entry.

        A snapshot whose ``updated_at`` is not newer than the stored one is
        skipped, so a late write can never regress visible state.
        """
        try:
            client = await self._get_client()
            index_key = RedisKeys.threads_index()

            stored_score = await client.zscore(index_key, thread.id)
            if stored_score is not None and stored_score >= thread.updated_at:
                logger.debug(
                    f"Skipping stale save for thread {thread.id} "
                    f"({thread.updated_at} <= {int(stored_score)})"
                )
                return False

            summary = ThreadSummary.from_thread(thread)

            async with client.pipeline(transaction=True) as pipe:
                pipe.set(
                    RedisKeys.thread(thread.id),
                    thread.model_dump_json(by_alias=True),
                    ex=self._ttl_seconds,
                )
                pipe.hset(RedisKeys.thread_summaries(), thread.id, summary.model_dump_json())
                pipe.zadd(index_key, {thread.id: thread.updated_at})
                await pipe.execute()

            evicted = await self._evict_overflow(client)
            if evicted:
                logger.info(f"Evicted {evicted} threads beyond index cap {self._index_max}")

            logger.debug(
                f"Saved thread {thread.id} ({len(thread.messages)} messages, "
                f"{len(thread.todos)} todos, {len(thread.files)} files)"
            )
            return True

        except Exception as e:
            logger.error(f"Failed to save thread {thread.id}: {e}")
            return False

    async def _evict_overflow(self, client: Redis) -> int:
        """Drop the oldest threads beyond the index cap."""
        index_key = RedisKeys.threads_index()
        count = await client.zcard(index_key)
        overflow = count - self._index_max
        if overflow <= 0:
            return 0

        stale_ids = [_decode(i) for i in await client.zrange(index_key, 0, overflow - 1)]
        if not stale_ids:
            return 0

        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(index_key, *stale_ids)
            pipe.hdel(RedisKeys.thread_summaries(), *stale_ids)
            pipe.delete(*[RedisKeys.thread(i) for i in stale_ids])
            await pipe.execute()
        return len(stale_ids)

    async def get_thread(self, thread_id: str) -> Optional[ChatThread]:
        """Retrieve a complete thread, or None if it is not stored."""
        try:
            client = await self._get_client()
            raw = await client.get(RedisKeys.thread(thread_id))
            if raw is None:
                return None
            return ChatThread.model_validate_json(raw)
        except Exception as e:
            logger.error(f"Failed to get thread {thread_id}: {e}")
            return None

    async def get_snapshot(self, thread_id: str) -> ThreadSnapshot:
        """Thread state as ``{todos, files, messages}``; empty when absent."""
        thread = await self.get_thread(thread_id)
        if thread is None:
            return ThreadSnapshot()
        return ThreadSnapshot.from_thread(thread)

    async def list_threads(self, limit: int = 50, offset: int = 0) -> List[ThreadSummary]:
        """List thread summaries, most recently updated first."""
        try:
            client = await self._get_client()
            ids = [
                _decode(i)
                for i in await client.zrevrange(
                    RedisKeys.threads_index(), offset, offset + limit - 1
                )
            ]
            if not ids:
                return []

            raw_summaries = await client.hmget(RedisKeys.thread_summaries(), ids)
            summaries: List[ThreadSummary] = []
            for thread_id, raw in zip(ids, raw_summaries):
                if raw is None:
                    continue
                try:
                    summaries.append(ThreadSummary.model_validate_json(raw))
                except Exception as e:
                    logger.warning(f"Failed to parse summary for thread {thread_id}: {e}")
            return summaries

        except Exception as e:
            logger.error(f"Failed to list threads: {e}")
            return []

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread and its index entry."""
        try:
            client = await self._get_client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(RedisKeys.thread(thread_id))
                pipe.zrem(RedisKeys.threads_index(), thread_id)
                pipe.hdel(RedisKeys.thread_summaries(), thread_id)
                await pipe.execute()
            logger.info(f"Deleted thread {thread_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to delete thread {thread_id}: {e}")
            return False

    async def clear_all_threads(self) -> int:
        """Delete every indexed thread, the index and the current-thread pointer."""
        try:
            client = await self._get_client()
            ids = [_decode(i) for i in await client.zrange(RedisKeys.threads_index(), 0, -1)]
            async with client.pipeline(transaction=True) as pipe:
                if ids:
                    pipe.delete(*[RedisKeys.thread(i) for i in ids])
                pipe.delete(*RedisKeys.all_index_keys().values())
                await pipe.execute()
            logger.info(f"Cleared {len(ids)} threads")
            return len(ids)
        except Exception as e:
            logger.error(f"Failed to clear threads: {e}")
            return 0

    async def get_current_thread_id(self) -> Optional[str]:
        try:
            client = await self._get_client()
            value = await client.get(RedisKeys.current_thread())
            return _decode(value) if value else None
        except Exception as e:
            logger.error(f"Failed to read current thread id: {e}")
            return None

    async def set_current_thread_id(self, thread_id: str) -> bool:
        try:
            client = await self._get_client()
            await client.set(RedisKeys.current_thread(), thread_id)
            return True
        except Exception as e:
            logger.error(f"Failed to set current thread id: {e}")
            return False


def summaries_to_json(summaries: List[ThreadSummary]) -> str:
    return json.dumps([s.model_dump() for s in summaries], indent=2)

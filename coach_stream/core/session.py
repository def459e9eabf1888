"""Session reconciler: canonical per-thread state for a streamed conversation.

The reconciler owns the in-memory ``ChatThread`` of the active conversation
and is the only code that mutates it. Deltas arrive through the callback
contract in arrival order and are merged here:

- message deltas pick the text to reveal; the reply is appended to the log
  only once, when the stream ends
- todo and file deltas replace the previous lists wholesale
- sub-agent start/complete signals create and terminalize SubAgentTasks,
  their todos and a system notification in the log

Each submitted message starts a new StreamSession with its own generation.
The callbacks handed to the stream task are bound to that generation, so a
task that outlives its session (cancelled, superseded) cannot touch state.

Example:
    reconciler = SessionReconciler(SessionConfig(), client, saver)
    task = reconciler.submit_user_message("Plan my training week")
    await task
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from coach_stream.core.agent_client import AgentClient
from coach_stream.core.agent_stream import stream_agent
from coach_stream.core.config import settings
from coach_stream.core.dispatch import (
    DEFAULT_SUBAGENT_DESCRIPTION,
    DEFAULT_SUBAGENT_NAME,
    SIGNAL_COMPLETE,
    SIGNAL_START,
)
from coach_stream.core.persistence import ThreadSaveScheduler
from coach_stream.core.progress import NullEmitter, SessionEmitter, safe_emit
from coach_stream.core.reveal import RevealScheduler
from coach_stream.core.threads import (
    ChatThread,
    Message,
    MessageRole,
    StepStatus,
    SubAgentStatus,
    SubAgentStep,
    SubAgentTask,
    ThreadSnapshot,
    TodoItem,
    TodoStatus,
    derive_title,
    new_id,
    now_ms,
)

logger = logging.getLogger(__name__)


@dataclass
class SessionConfig:
    """Inputs of a reconciler. Unset values fall back to settings."""

    thread_id: Optional[str] = None
    reveal_chunk_size: Optional[int] = None
    reveal_interval: Optional[float] = None
    delegate_tool_name: Optional[str] = None


@dataclass
class StreamSession:
    """Runtime handle of one streamed exchange."""

    thread_id: str
    generation: int
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    is_streaming: bool = True
    error: Optional[str] = None
    run_metadata: Dict[str, Any] = field(default_factory=dict)
    ended: bool = False


class _SessionCallbacks:
    """StreamCallbacks bound to one session generation."""

    def __init__(self, reconciler: "SessionReconciler", session: StreamSession):
        self._reconciler = reconciler
        self._session = session

    def _live(self, callback: str) -> bool:
        if self._reconciler.is_current(self._session):
            return True
        logger.debug(
            f"Ignoring {callback} from stale session generation {self._session.generation}"
        )
        return False

    async def on_messages(self, messages: List[Message]) -> None:
        if self._live("on_messages"):
            await self._reconciler.on_messages(messages)

    async def on_todos(self, todos: List[TodoItem]) -> None:
        if self._live("on_todos"):
            await self._reconciler.on_todos(todos)

    async def on_files(self, files: Dict[str, str]) -> None:
        if self._live("on_files"):
            await self._reconciler.on_files(files)

    async def on_metadata(self, metadata: Dict[str, Any]) -> None:
        if self._live("on_metadata"):
            await self._reconciler.on_metadata(metadata)

    async def on_error(self, error: Exception) -> None:
        if self._live("on_error"):
            await self._reconciler.on_error(error)

    async def on_end(self) -> None:
        if self._live("on_end"):
            await self._reconciler.on_end()


class SessionReconciler:
    """Merges stream deltas into the active thread."""

    def __init__(
        self,
        config: SessionConfig,
        client: AgentClient,
        saver: ThreadSaveScheduler,
        emitter: Optional[SessionEmitter] = None,
        on_reveal: Optional[Callable[[str], None]] = None,
    ):
        self.config = config
        self._client = client
        self._saver = saver
        self._emitter = emitter or NullEmitter()
        self.delegate_tool_name = config.delegate_tool_name or settings.delegate_tool_name
        self.reveal = RevealScheduler(
            chunk_size=config.reveal_chunk_size,
            interval=config.reveal_interval,
            on_update=on_reveal,
        )
        self.thread = ChatThread(id=config.thread_id or new_id())
        self.session: Optional[StreamSession] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_streaming(self) -> bool:
        return self.session is not None and self.session.is_streaming

    @property
    def error(self) -> Optional[str]:
        return self.session.error if self.session is not None else None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def is_current(self, session: StreamSession) -> bool:
        return (
            session is self.session
            and session.generation == self._generation
            and not session.cancel_event.is_set()
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def submit_user_message(self, text: str) -> Optional[asyncio.Task]:
        """Append a human message and start streaming the agent's reply.

        Returns the stream task, or None when a stream is already running or
        the text is blank.
        """
        if self.is_streaming:
            logger.debug("Ignoring submit while a stream is running")
            return None
        if not text or not text.strip():
            return None

        self.thread.append_message(
            Message(id=new_id(), role=MessageRole.HUMAN, content=text, timestamp=now_ms())
        )
        if not self.thread.title:
            self.thread.title = derive_title(self.thread.messages)
        self._saver.schedule_save(self.thread)

        self.reveal.reset()
        self._abandon_session()
        if self._task is not None and not self._task.done():
            # A stream that already reported an error may still be reading
            self._task.cancel()
        self._generation += 1
        session = StreamSession(thread_id=self.thread.id, generation=self._generation)
        self.session = session

        history = list(self.thread.messages)
        logger.info(
            f"Starting stream generation {session.generation} for thread {self.thread.id}"
        )
        self._task = asyncio.get_running_loop().create_task(self._run_stream(session, history))
        return self._task

    async def cancel(self) -> None:
        """Stop the active stream without committing the partial reply."""
        self._abandon_session()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if not task.cancelled() or (current is not None and current.cancelling()):
                    raise
        self.reveal.reset()

    async def reset(self) -> None:
        """Cancel and start over on a fresh, empty thread."""
        await self.cancel()
        self.session = None
        self.thread = ChatThread()
        self._saver.schedule_save(self.thread)
        await self._saver.store.set_current_thread_id(self.thread.id)
        logger.info(f"Started new thread {self.thread.id}")

    async def load_thread(self, thread_id: str) -> bool:
        """Switch to a stored thread. Returns True if it was found in the store.

        An unknown id starts an empty thread under that id. Refused while a
        stream is running.
        """
        if self.is_streaming:
            logger.warning(f"Cannot load thread {thread_id} while streaming")
            return False

        await self.cancel()
        stored = await self._saver.store.get_thread(thread_id)
        self.session = None
        self.thread = stored if stored is not None else ChatThread(id=thread_id)
        await self._saver.store.set_current_thread_id(thread_id)
        logger.info(
            f"Loaded thread {thread_id} ({len(self.thread.messages)} messages)"
            if stored is not None
            else f"Thread {thread_id} not stored, starting empty"
        )
        return stored is not None

    async def sync_remote_state(self) -> ThreadSnapshot:
        """Adopt the agent's todos and files for the active thread.

        Messages are adopted only when the local log is empty. An empty
        snapshot (the agent does not know the thread) leaves state alone.
        """
        snapshot = await self._client.get_thread_state(self.thread.id)
        if not (snapshot.todos or snapshot.files or snapshot.messages):
            return snapshot

        self.thread.todos = list(snapshot.todos)
        self.thread.files = dict(snapshot.files)
        if not self.thread.messages and snapshot.messages:
            self.thread.messages = list(snapshot.messages)
            self.thread.title = derive_title(self.thread.messages)
        self._saver.schedule_save(self.thread)
        return snapshot

    async def aclose(self) -> None:
        await self.cancel()
        await self._saver.flush()

    def _abandon_session(self) -> None:
        if self.session is not None:
            self.session.cancel_event.set()
            self.session.is_streaming = False

    async def _run_stream(self, session: StreamSession, history: List[Message]) -> None:
        callbacks = _SessionCallbacks(self, session)
        try:
            await stream_agent(
                self._client, session.thread_id, history, callbacks, session.cancel_event
            )
        except asyncio.CancelledError:
            logger.debug(f"Stream generation {session.generation} cancelled")
            raise
        except Exception as e:
            logger.error(f"Stream generation {session.generation} failed: {e}")
            await callbacks.on_error(e)

    # ------------------------------------------------------------------
    # Deltas
    # ------------------------------------------------------------------

    def _reveal_text(self, messages: List[Message]) -> Optional[str]:
        """Latest assistant text, else the latest delegate-tool result."""
        for message in reversed(messages):
            if message.role == MessageRole.AI and message.has_text:
                return message.content
        for message in reversed(messages):
            if (
                message.role == MessageRole.TOOL
                and message.name == self.delegate_tool_name
                and message.has_text
            ):
                return message.content
        return None

    async def on_messages(self, messages: List[Message]) -> None:
        text = self._reveal_text(messages)
        if text is not None and text != self.reveal.target:
            self.reveal.set_target(text)

    async def on_todos(self, todos: List[TodoItem]) -> None:
        self.thread.todos = list(todos)
        self._saver.schedule_save(self.thread)

    async def on_files(self, files: Dict[str, str]) -> None:
        self.thread.files = dict(files)
        self._saver.schedule_save(self.thread)

    async def on_metadata(self, metadata: Dict[str, Any]) -> None:
        signal_type = metadata.get("type")
        sub_agent = metadata.get("subAgent")
        if (
            signal_type in (SIGNAL_START, SIGNAL_COMPLETE)
            and isinstance(sub_agent, dict)
            and isinstance(sub_agent.get("id"), str)
        ):
            if signal_type == SIGNAL_START:
                await self._start_sub_agent(sub_agent)
            else:
                await self._complete_sub_agent(sub_agent)
            return

        if self.session is not None:
            self.session.run_metadata.update(metadata)

    async def on_error(self, error: Exception) -> None:
        detail = str(error) or error.__class__.__name__
        logger.error(f"Stream error on thread {self.thread.id}: {detail}")
        if self.session is not None:
            self.session.error = detail
            self.session.is_streaming = False
        self.reveal.cancel()
        await safe_emit(self._emitter, detail, "error", {"thread_id": self.thread.id})

    async def on_end(self) -> None:
        session = self.session
        if session is None or session.ended:
            return
        session.ended = True

        reply = self.reveal.target
        if reply:
            self.thread.append_message(
                Message(id=new_id(), role=MessageRole.AI, content=reply, timestamp=now_ms())
            )
        self.reveal.reset()
        session.is_streaming = False

        await self._saver.save_now(self.thread)
        await safe_emit(
            self._emitter,
            "Response complete",
            "stream_end",
            {"thread_id": self.thread.id, "generation": session.generation},
        )

    def _notify(self, text: str) -> None:
        self.thread.append_message(
            Message(id=new_id(), role=MessageRole.SYSTEM, content=text, timestamp=now_ms())
        )

    async def _start_sub_agent(self, data: Dict[str, Any]) -> None:
        task_id = data["id"]
        if self.thread.find_sub_agent(task_id) is not None:
            logger.debug(f"Sub-agent {task_id} already started")
            return

        name = data.get("name") if isinstance(data.get("name"), str) else None
        name = name or DEFAULT_SUBAGENT_NAME
        description = data.get("description") if isinstance(data.get("description"), str) else None
        description = description or DEFAULT_SUBAGENT_DESCRIPTION
        now = now_ms()

        self.thread.sub_agents.append(
            SubAgentTask(
                id=task_id,
                name=name,
                status=SubAgentStatus.THINKING,
                steps=[
                    SubAgentStep(
                        description=description, status=StepStatus.RUNNING, timestamp=now
                    )
                ],
                progress=0,
                start_time=now,
            )
        )
        if self.thread.find_todo(task_id) is None:
            self.thread.todos.append(
                TodoItem(
                    id=task_id,
                    content=description,
                    status=TodoStatus.IN_PROGRESS,
                    created_at=now,
                    updated_at=now,
                )
            )
        self._notify(f"🤖 **{name}** is working on: {description}")
        self._saver.schedule_save(self.thread)

        logger.info(f"Sub-agent {name} started ({task_id})")
        await safe_emit(
            self._emitter,
            f"{name} is working on: {description}",
            "subagent_start",
            {"sub_agent_id": task_id, "name": name},
        )

    async def _complete_sub_agent(self, data: Dict[str, Any]) -> None:
        task_id = data["id"]
        task = self.thread.find_sub_agent(task_id)
        if task is None:
            logger.debug(f"Dropping completion for unknown sub-agent {task_id}")
            return
        if task.is_terminal:
            logger.debug(f"Sub-agent {task_id} already finished")
            return

        failed = data.get("status") == SubAgentStatus.FAILED.value
        result = data.get("result") if isinstance(data.get("result"), str) else None
        now = now_ms()

        task.status = SubAgentStatus.FAILED if failed else SubAgentStatus.COMPLETED
        task.progress = 100
        task.end_time = now
        for step in task.steps:
            if step.status not in (StepStatus.COMPLETED, StepStatus.FAILED):
                step.status = StepStatus.FAILED if failed else StepStatus.COMPLETED
                step.output = result

        todo = self.thread.find_todo(task_id)
        if todo is not None:
            todo.status = TodoStatus.CANCELLED if failed else TodoStatus.COMPLETED
            todo.updated_at = now

        self._notify(
            f"❌ **{task.name}** failed" if failed else f"✅ **{task.name}** completed task"
        )
        self._saver.schedule_save(self.thread)

        logger.info(f"Sub-agent {task.name} {task.status.value} ({task_id})")
        await safe_emit(
            self._emitter,
            f"{task.name} failed" if failed else f"{task.name} completed task",
            "subagent_failed" if failed else "subagent_complete",
            {"sub_agent_id": task_id, "name": task.name, "status": task.status.value},
        )

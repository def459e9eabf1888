"""Top-level `chat` CLI command."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Optional

import click
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from coach_stream.core.agent_client import AgentClient
from coach_stream.core.persistence import ThreadSaveScheduler
from coach_stream.core.progress import create_emitter
from coach_stream.core.redis import get_redis_client
from coach_stream.core.session import SessionConfig, SessionReconciler
from coach_stream.core.threads import ChatThread, MessageRole, ThreadManager, TodoStatus

_TODO_MARKS = {
    TodoStatus.PENDING: "[dim]○[/dim]",
    TodoStatus.IN_PROGRESS: "[cyan]◐[/cyan]",
    TodoStatus.COMPLETED: "[green]●[/green]",
    TodoStatus.CANCELLED: "[red]✕[/red]",
}


def _reply_since(thread: ChatThread, start: int) -> Optional[str]:
    """Assistant reply appended after message index ``start``."""
    for message in reversed(thread.messages[start:]):
        if message.role == MessageRole.AI:
            return message.content
    return None


def _todo_table(thread: ChatThread) -> Table:
    table = Table(title="Plan", show_header=False, box=None)
    table.add_column("", no_wrap=True)
    table.add_column("Task")
    for todo in thread.todos:
        table.add_row(_TODO_MARKS.get(todo.status, "?"), escape(todo.content))
    return table


@click.command()
@click.argument("message")
@click.option("--thread-id", "-t", help="Thread ID to continue an existing conversation")
@click.option("--new", "new_thread", is_flag=True, help="Start a new conversation")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def chat(message: str, thread_id: Optional[str], new_thread: bool, as_json: bool):
    """Send a message to the agent and show its reply as it streams in.

    Without --thread-id the current conversation is continued; use --new to
    start over.
    """

    async def _chat():
        console = Console()
        tm = ThreadManager(redis_client=get_redis_client())
        saver = ThreadSaveScheduler(tm)
        client = AgentClient()

        live = None if as_json else Live(console=console, refresh_per_second=30, transient=True)

        def _on_reveal(text: str) -> None:
            if live is not None:
                live.update(Markdown(text))

        reconciler = SessionReconciler(
            SessionConfig(),
            client,
            saver,
            emitter=create_emitter(cli=not as_json),
            on_reveal=_on_reveal,
        )

        try:
            target_id = None if new_thread else (thread_id or await tm.get_current_thread_id())
            if target_id:
                found = await reconciler.load_thread(target_id)
                if not as_json:
                    label = "Continuing" if found else "Created"
                    console.print(f"[dim]📎 {label} thread: {target_id}[/dim]")
            else:
                await tm.set_current_thread_id(reconciler.thread.id)
                if not as_json:
                    console.print(f"[dim]📎 Created thread: {reconciler.thread.id}[/dim]")

            start = len(reconciler.thread.messages)
            task = reconciler.submit_user_message(message)
            if task is None:
                console.print("[red]❌ Nothing to send[/red]")
                sys.exit(1)

            if live is not None:
                with live:
                    await task
            else:
                await task

            reply = _reply_since(reconciler.thread, start)
            error = reconciler.error

            if as_json:
                print(
                    json.dumps(
                        {
                            "thread_id": reconciler.thread.id,
                            "reply": reply,
                            "error": error,
                            "todos": [
                                t.model_dump(mode="json", by_alias=True)
                                for t in reconciler.thread.todos
                            ],
                            "files": sorted(reconciler.thread.files),
                        },
                        indent=2,
                    )
                )
            else:
                if reply:
                    console.print("\n[bold green]✅ Response:[/bold green]\n")
                    console.print(Markdown(reply))
                if reconciler.thread.todos:
                    console.print()
                    console.print(_todo_table(reconciler.thread))
                if reconciler.thread.files:
                    console.print(
                        f"\n[dim]📄 Files: {', '.join(sorted(reconciler.thread.files))}[/dim]"
                    )
                console.print("\n[dim]💡 To continue this conversation:[/dim]")
                console.print(
                    f'[dim]   coach-stream chat --thread-id {reconciler.thread.id} "your follow-up"[/dim]'
                )

            if error:
                if not as_json:
                    console.print(f"[red]❌ Error: {escape(error)}[/red]")
                sys.exit(1)

        finally:
            await reconciler.aclose()
            await client.aclose()

    asyncio.run(_chat())

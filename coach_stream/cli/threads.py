"""Thread management CLI commands."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from coach_stream.core.agent_client import AgentClient
from coach_stream.core.exceptions import TransportError
from coach_stream.core.redis import get_redis_client
from coach_stream.core.threads import (
    MessageRole,
    ThreadManager,
    ThreadSnapshot,
    summaries_to_json,
)

_ROLE_STYLES = {
    MessageRole.HUMAN: ("You", "bold blue"),
    MessageRole.AI: ("Agent", "bold green"),
    MessageRole.SYSTEM: ("System", "dim"),
    MessageRole.TOOL: ("Tool", "magenta"),
}


def _fmt_ms(ms: int | None) -> str:
    if not ms:
        return "-"
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc).astimezone()
    return dt.strftime("%Y-%m-%d %H:%M:%S %Z")


def _print_snapshot(console: Console, snapshot: ThreadSnapshot) -> None:
    for message in snapshot.messages:
        label, style = _ROLE_STYLES.get(message.role, (message.role.value, "white"))
        console.print(f"[{style}]{label}:[/{style}]")
        if message.content:
            console.print(Markdown(message.content))
        console.print()

    if snapshot.todos:
        table = Table(title="Todos")
        table.add_column("ID", no_wrap=True)
        table.add_column("Status", no_wrap=True)
        table.add_column("Content")
        for todo in snapshot.todos:
            table.add_row(todo.id, todo.status.value, escape(todo.content))
        console.print(table)

    if snapshot.files:
        table = Table(title="Files")
        table.add_column("Path")
        table.add_column("Type", no_wrap=True)
        table.add_column("Language", no_wrap=True)
        table.add_column("Size", justify="right")
        for item in snapshot.file_items():
            table.add_row(escape(item.path), item.type.value, item.language, str(item.size))
        console.print(table)


@click.group()
def thread():
    """Thread management commands."""
    pass


@thread.command("list")
@click.option("--limit", "-l", default=10, help="Number of threads to show")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def thread_list(limit: int, as_json: bool):
    """List stored threads, most recently updated first."""

    async def _list():
        console = Console()
        tm = ThreadManager(redis_client=get_redis_client())
        summaries = await tm.list_threads(limit=limit)
        current = await tm.get_current_thread_id()

        if as_json:
            print(summaries_to_json(summaries))
            return

        if not summaries:
            console.print("[yellow]No threads found.[/yellow]")
            return

        table = Table(title="Threads", show_lines=False)
        table.add_column("Updated", no_wrap=True)
        table.add_column("Title")
        table.add_column("Messages", justify="right")
        table.add_column("Thread ID", no_wrap=True)

        for summary in summaries:
            marker = " [green]*[/green]" if summary.id == current else ""
            table.add_row(
                _fmt_ms(summary.updated_at),
                escape(summary.title),
                str(summary.message_count),
                f"{summary.id}{marker}",
            )

        console.print(table)

    asyncio.run(_list())


@thread.command("get")
@click.argument("thread_id")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def thread_get(thread_id: str, as_json: bool):
    """Show a stored thread."""

    async def _get():
        console = Console()
        tm = ThreadManager(redis_client=get_redis_client())
        stored = await tm.get_thread(thread_id)
        if stored is None:
            if as_json:
                print(json.dumps({"error": "Thread not found", "thread_id": thread_id}))
            else:
                console.print(f"[red]Thread not found:[/red] {thread_id}")
            return

        if as_json:
            print(stored.model_dump_json(by_alias=True, indent=2))
            return

        console.print(f"[bold]{escape(stored.display_title())}[/bold] [dim]({stored.id})[/dim]")
        console.print(f"[dim]Updated {_fmt_ms(stored.updated_at)}[/dim]\n")
        _print_snapshot(console, ThreadSnapshot.from_thread(stored))

        if stored.sub_agents:
            table = Table(title="Sub-agents")
            table.add_column("Name")
            table.add_column("Status", no_wrap=True)
            table.add_column("Started", no_wrap=True)
            table.add_column("Finished", no_wrap=True)
            for task in stored.sub_agents:
                table.add_row(
                    task.name, task.status.value, _fmt_ms(task.start_time), _fmt_ms(task.end_time)
                )
            console.print(table)

    asyncio.run(_get())


@thread.command("state")
@click.argument("thread_id")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def thread_state(thread_id: str, as_json: bool):
    """Show the agent's own state for a thread."""

    async def _state():
        console = Console()
        client = AgentClient()
        try:
            snapshot = await client.get_thread_state(thread_id)
        except TransportError as e:
            console.print(f"[red]❌ Error: {escape(str(e))}[/red]")
            raise SystemExit(1)
        finally:
            await client.aclose()

        if as_json:
            print(snapshot.model_dump_json(by_alias=True, indent=2))
            return

        if not (snapshot.messages or snapshot.todos or snapshot.files):
            console.print(f"[yellow]The agent has no state for thread {thread_id}.[/yellow]")
            return
        _print_snapshot(console, snapshot)

    asyncio.run(_state())


@thread.command("delete")
@click.argument("thread_id")
def thread_delete(thread_id: str):
    """Delete a stored thread."""

    async def _delete():
        console = Console()
        tm = ThreadManager(redis_client=get_redis_client())
        if await tm.delete_thread(thread_id):
            console.print(f"[green]✅ Deleted thread {thread_id}[/green]")
        else:
            console.print(f"[red]❌ Failed to delete thread {thread_id}[/red]")
            raise SystemExit(1)

    asyncio.run(_delete())


@thread.command("clear")
@click.option("-y", "--yes", is_flag=True, help="Do not prompt for confirmation")
def thread_clear(yes: bool):
    """Delete every stored thread."""
    if not yes and not click.confirm("Delete all stored threads?"):
        click.echo("Aborted.")
        return

    async def _clear():
        console = Console()
        tm = ThreadManager(redis_client=get_redis_client())
        deleted = await tm.clear_all_threads()
        console.print(f"[green]✅ Deleted {deleted} threads[/green]")

    asyncio.run(_clear())

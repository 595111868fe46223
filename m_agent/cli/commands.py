"""CLI commands for m-agent."""

import asyncio
import json
import uuid

import typer
from rich.console import Console
from rich.table import Table

from m_agent import __brand__, __logo__, __version__

app = typer.Typer(
    name="m-agent",
    help=f"{__logo__} {__brand__} - Conversational agent backend",
    no_args_is_help=True,
)
sessions_app = typer.Typer(help="Inspect and manage stored sessions")
app.add_typer(sessions_app, name="sessions")

console = Console()


def _cli_fail(cause: str, fix: str | None = None, *, exit_code: int = 1) -> None:
    """Print a consistent CLI error block and exit."""
    console.print(f"[red]{cause}[/red]")
    if fix:
        console.print(f"[dim]Fix: {fix}[/dim]")
    raise typer.Exit(exit_code)


def _store_and_scope(gateway: bool, workspace: str | None):
    from m_agent.config.loader import load_config
    from m_agent.session.store import SessionScope, SessionStore

    config = load_config()
    store = SessionStore(config.home_path)
    if gateway:
        return store, SessionScope.gateway(workspace)
    return store, SessionScope.conversation(workspace or config.agents.defaults.workspace_id)


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} {__brand__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
):
    """m-agent - Conversational agent backend."""
    pass


@app.command("version")
def version_command():
    """Show m-agent version."""
    console.print(f"{__logo__} {__brand__} v{__version__}")


# ============================================================================
# Session Commands
# ============================================================================


@sessions_app.command("list")
def sessions_list(
    gateway: bool = typer.Option(False, "--gateway", "-g", help="List gateway sessions"),
    workspace: str = typer.Option(None, "--workspace", "-w", help="Workspace id"),
):
    """List stored sessions, newest first."""
    store, scope = _store_and_scope(gateway, workspace)
    items = store.list(scope)
    if not items:
        console.print("No sessions.")
        return

    table = Table(title="Gateway sessions" if gateway else "Conversations")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Messages", justify="right")
    table.add_column("Updated", style="dim")
    if gateway:
        table.add_column("Channel")
    for item in items:
        row = [item.id, item.title, str(item.message_count), item.updated_at]
        if gateway:
            row.append(item.channel or "-")
        table.add_row(*row)
    console.print(table)


@sessions_app.command("show")
def sessions_show(
    session_id: str = typer.Argument(..., help="Session id"),
    gateway: bool = typer.Option(False, "--gateway", "-g", help="Look in gateway sessions"),
    workspace: str = typer.Option(None, "--workspace", "-w", help="Workspace id"),
    raw: bool = typer.Option(False, "--json", help="Print the stored JSON"),
):
    """Show one session's messages."""
    from m_agent.errors import StoreError

    store, scope = _store_and_scope(gateway, workspace)
    try:
        session = store.load(session_id, scope)
    except StoreError as exc:
        _cli_fail(str(exc))
    if session is None:
        _cli_fail(f"Session not found: {session_id}")

    if raw:
        console.print_json(json.dumps(session.to_wire()))
        return

    console.print(f"[bold]{session.title}[/bold] [dim]({session.id}, {session.message_count} messages)[/dim]")
    for message in session.messages:
        calls = ", ".join(call.tool_name for call in message.tool_calls())
        text = message.text or (f"[tool calls: {calls}]" if calls else "")
        if not text and message.images():
            text = f"[{len(message.images())} image(s)]"
        console.print(f"[cyan]{message.role}[/cyan]: {text}")


@sessions_app.command("delete")
def sessions_delete(
    session_id: str = typer.Argument(..., help="Session id"),
    gateway: bool = typer.Option(False, "--gateway", "-g", help="Delete from gateway sessions"),
    workspace: str = typer.Option(None, "--workspace", "-w", help="Workspace id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a session (succeeds when it is already gone)."""
    from m_agent.errors import StoreError

    store, scope = _store_and_scope(gateway, workspace)
    if not yes and not typer.confirm(f"Delete session {session_id}?"):
        raise typer.Exit(0)
    try:
        removed = store.delete(session_id, scope)
    except StoreError as exc:
        _cli_fail(str(exc))
    if removed:
        console.print(f"[green]✓[/green] Deleted {session_id}")
    else:
        console.print(f"[dim]Session {session_id} was already absent[/dim]")


@app.command("session-key")
def session_key(
    channel: str = typer.Option(..., "--channel", "-c", help="Gateway channel (telegram, whatsapp, ...)"),
    peer: str = typer.Option(..., "--peer", "-p", help="Sender id"),
    agent_id: str = typer.Option(None, "--agent", "-a", help="Agent id (default: main)"),
    group: bool = typer.Option(False, "--group", help="Message comes from a group chat"),
    chat: str = typer.Option(None, "--chat", help="Group chat id"),
):
    """Print the session key a gateway message would map to."""
    from m_agent.gateway.adapter import GatewayMetadata, derive_session_key

    key = derive_session_key(
        GatewayMetadata(channel=channel, peer_id=peer, agent_id=agent_id, is_group=group, chat_id=chat)
    )
    if key is None:
        _cli_fail("Cannot derive a session key.", "Pass a non-empty --channel and --peer.")
    console.print(key)


# ============================================================================
# Chat
# ============================================================================


@app.command()
def chat(
    message: str = typer.Option(..., "--message", "-m", help="Message to send to the agent"),
    session_id: str = typer.Option(None, "--session", "-s", help="Conversation id to continue"),
    model: str = typer.Option(None, "--model", help="Model override"),
):
    """Run one streamed turn and print it."""
    from m_agent.agent.api import ChatService, ChatRequest
    from m_agent.agent.messages import user_message
    from m_agent.bus.queue import EventStream
    from m_agent.config.loader import get_config_path, load_config
    from m_agent.errors import CredentialError
    from m_agent.session.store import SessionScope

    config = load_config()
    service = ChatService(config)
    sid = session_id or f"cli-{uuid.uuid4().hex[:12]}"
    scope = SessionScope.conversation(config.agents.defaults.workspace_id)
    existing = service.store.load(sid, scope)
    history = list(existing.messages) if existing else []
    history.append(user_message(f"msg-{uuid.uuid4().hex[:16]}", message))

    async def _print_events(sink: EventStream) -> None:
        async for event in sink:
            if event.kind == "text-delta":
                console.print(event.delta, end="", markup=False, highlight=False)
            elif event.kind == "tool-call":
                console.print(f"\n[dim]→ {event.tool_name}({json.dumps(event.input)})[/dim]")
            elif event.kind == "tool-result":
                marker = "[red]✗[/red]" if event.is_error else "[green]✓[/green]"
                console.print(f"[dim]{marker} {event.tool_name}[/dim]")
            elif event.kind == "tool-approval-request":
                console.print(
                    f"\n[yellow]Approval needed for {event.tool_name} "
                    f"(approval id {event.approval_id})[/yellow]"
                )
            elif event.kind == "error":
                console.print(f"\n[red]{event.message}[/red]")
        console.print()

    async def run_once():
        sink = EventStream()
        request = ChatRequest(session_id=sid, messages=history, model=model)
        async with service:
            _, result = await asyncio.gather(
                _print_events(sink),
                service.handle_chat(request, sink),
            )
        console.print(f"[dim]{__logo__} session {sid} ({result.status})[/dim]")

    try:
        asyncio.run(run_once())
    except CredentialError as exc:
        _cli_fail(str(exc), f"Set providers.<name>.apiKey in {get_config_path()} or export the API key.")


if __name__ == "__main__":
    app()

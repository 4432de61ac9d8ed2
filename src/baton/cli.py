"""Command line interface for Baton."""

from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .agent import Agent
from .config import Settings, load_settings
from .errors import BatonError
from .logging_utils import configure_logging
from .providers.base import ProviderStrategy
from .providers.republic_client import RepublicProvider
from .runner import RunConfig, Runner
from .session import FileSessionStore
from .streaming import (
    AgentHandoffEvent,
    GuardrailCompleteEvent,
    MessageCompleteEvent,
    RawContentDeltaEvent,
    ToolExecutionCompleteEvent,
    ToolExecutionErrorEvent,
    ToolExecutionStartEvent,
)

DEFAULT_INSTRUCTIONS = "You are a helpful assistant."

console = Console()
app = typer.Typer(name="baton", help="Run agents from the command line.", add_completion=False)
sessions_app = typer.Typer(help="Inspect stored sessions.", add_completion=False)
app.add_typer(sessions_app, name="sessions")


def _build_provider(settings: Settings) -> ProviderStrategy:
    return RepublicProvider.from_settings(settings)


def _exit_with_error(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    raise typer.Exit(1)


def _render_stream(runner: Runner, agent: Agent, prompt: str, session_id: str | None) -> None:
    streamed = runner.run_streamed(agent, prompt, session_id=session_id)
    saw_delta = False
    for event in streamed.stream_events():
        if isinstance(event, RawContentDeltaEvent):
            saw_delta = True
            console.print(event.delta, end="", markup=False, highlight=False)
        elif isinstance(event, MessageCompleteEvent) and event.content and not saw_delta:
            console.print(event.content, markup=False, highlight=False)
        elif isinstance(event, ToolExecutionStartEvent):
            console.print(f"[dim]> {escape(event.tool_name)} {escape(event.arguments)}[/dim]")
        elif isinstance(event, ToolExecutionCompleteEvent):
            console.print(f"[dim]< {event.tool_name} done[/dim]")
        elif isinstance(event, ToolExecutionErrorEvent):
            console.print(f"[yellow]< {escape(event.tool_name)} failed: {escape(event.error)}[/yellow]")
        elif isinstance(event, AgentHandoffEvent):
            console.print(f"[cyan]handoff {event.from_agent} -> {event.to_agent}[/cyan]")
        elif isinstance(event, GuardrailCompleteEvent) and event.tripwire_triggered:
            console.print(f"[red]guardrail {escape(event.guardrail_name)} tripped: {escape(event.message)}[/red]")
    if saw_delta:
        console.print()
    result = streamed.wait_for_completion()
    console.print(f"[dim]turns={result.turns} tokens={result.usage.total_tokens}[/dim]")


@app.command()
def run(
    prompt: str = typer.Argument(..., help="User message to send"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model in provider:model format"),
    instructions: str = typer.Option(DEFAULT_INSTRUCTIONS, "--instructions", "-i", help="Agent instructions"),
    max_turns: Optional[int] = typer.Option(None, "--max-turns", help="Turn budget for the run"),
    stream: bool = typer.Option(False, "--stream/--no-stream", help="Print events as they arrive"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Session id to load and save"),
) -> None:
    """Run a single agent against PROMPT."""
    configure_logging(profile="cli")
    try:
        settings = load_settings(model=model, max_turns=max_turns)
        provider = _build_provider(settings)
    except BatonError as exc:
        _exit_with_error(str(exc))
        return

    agent = Agent(name="assistant", instructions=instructions, max_turns=settings.max_turns, model=settings.model)
    store = FileSessionStore(settings.sessions_dir) if session else None
    runner = Runner(provider, config=RunConfig.from_settings(settings), session_store=store)
    try:
        if stream:
            _render_stream(runner, agent, prompt, session)
            return
        result = runner.run(agent, prompt, session_id=session)
    except BatonError as exc:
        _exit_with_error(str(exc))
        return
    console.print(str(result.final_output or ""), markup=False, highlight=False)


def _session_store() -> FileSessionStore:
    return FileSessionStore(load_settings().sessions_dir)


@sessions_app.command("list")
def list_sessions() -> None:
    """List stored session ids."""
    store = _session_store()
    table = Table("id", "messages", "updated")
    for session_id in store.list():
        session = store.retrieve(session_id)
        if session is None:
            continue
        table.add_row(session.id, str(session.message_count), session.updated_at.isoformat(timespec="seconds"))
    console.print(table)


@sessions_app.command("show")
def show_session(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Print the messages of one session."""
    session = _session_store().retrieve(session_id)
    if session is None:
        _exit_with_error(f"Session not found: {session_id}")
        return
    for message in session.messages:
        role = message.get("role") or message.get("type", "-")
        content = message.get("content") or message.get("output") or message.get("name") or ""
        console.print(f"[bold]{role}[/bold]: ", end="")
        console.print(str(content), markup=False, highlight=False)


@sessions_app.command("delete")
def delete_session(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Delete one session."""
    if _session_store().delete(session_id) is None:
        _exit_with_error(f"Session not found: {session_id}")
        return
    console.print(f"Deleted session {session_id}")


def main() -> None:
    app()

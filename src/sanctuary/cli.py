"""Sanctuary command line."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from sanctuary.app.runtime import AppRuntime, ConversationSession, OperatorSession
from sanctuary.config.settings import get_settings
from sanctuary.core.types import ClientAction
from sanctuary.errors import PlanDecisionError, RateLimitExceededError, SanctuaryError
from sanctuary.logging_utils import configure_logging
from sanctuary.store.crypto import ContentCipher
from sanctuary.store.plans import PlanBook, PlanStatus

app = typer.Typer(name="sanctuary", help="Mentor and operator agents", add_completion=False)
console = Console()
EXIT_WORDS = frozenset({"exit", "quit", ":q"})


class ConsoleSink:
    """Streams text to the terminal and prints client actions at the end of a turn."""

    def __init__(self, out: Console) -> None:
        self._out = out

    async def text(self, chunk: str) -> None:
        self._out.print(chunk, end="", markup=False, highlight=False)

    async def close(self, actions: list[ClientAction]) -> None:
        self._out.print()
        for action in actions:
            self._out.print(f"[dim]action[/dim] {json.dumps(action.to_dict(), ensure_ascii=False)}")


async def _repl(runtime: AppRuntime, session: ConversationSession, prompt: str) -> None:
    sink = ConsoleSink(console)
    async with runtime:
        while True:
            raw = await asyncio.to_thread(console.input, f"[bold]{prompt}[/bold] ")
            if raw.strip().casefold() in EXIT_WORDS:
                break
            if not raw.strip():
                continue
            try:
                await session.handle_message(raw, sink)
            except RateLimitExceededError as exc:
                console.print(f"[yellow]slow down, retry in {exc.retry_after}s[/yellow]")
            except ValueError as exc:
                console.print(f"[red]{exc}[/red]")
            if isinstance(session, OperatorSession):
                for proposal in session.pending():
                    console.print(f"[cyan]pending plan[/cyan] {proposal.id} {proposal.title}")


@app.command()
def chat(
    user: str = typer.Option("local", "--user", "-u", help="User id"),
    session_id: str | None = typer.Option(None, "--session", "-s", help="Session id, defaults to the user id"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
) -> None:
    """Talk to the mentor."""

    settings = get_settings(workspace)
    configure_logging(profile="chat", level=settings.log_level)
    runtime = AppRuntime(settings)
    asyncio.run(_repl(runtime, runtime.mentor(session_id or user, user), "you"))


@app.command()
def operator(
    user: str = typer.Option("operator", "--user", "-u", help="Operator id"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
) -> None:
    """Work with the privileged operator agent."""

    settings = get_settings(workspace)
    configure_logging(profile="chat", level=settings.log_level)
    runtime = AppRuntime(settings)
    asyncio.run(_repl(runtime, runtime.operator(user), "operator"))


@app.command()
def plans(
    user: str | None = typer.Option(None, "--user", "-u", help="Only this operator's plans"),
    pending: bool = typer.Option(False, "--pending", help="Only pending plans"),
) -> None:
    """List plan proposals."""

    book = PlanBook(get_settings().resolve_home())
    table = Table("id", "status", "title", "resources")
    for proposal in book.proposals(user, PlanStatus.PENDING if pending else None):
        table.add_row(proposal.id, proposal.status.value, proposal.title, ", ".join(proposal.affected_resources))
    console.print(table)


def _decide(proposal_id: str, *, approved: bool, note: str | None, user: str) -> None:
    settings = get_settings()
    configure_logging(profile="chat", level=settings.log_level)
    runtime = AppRuntime(settings)

    async def _run() -> None:
        async with runtime:
            await runtime.operator(user).decide(proposal_id, approved=approved, sink=ConsoleSink(console), note=note)

    try:
        asyncio.run(_run())
    except PlanDecisionError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc


@app.command()
def approve(
    proposal_id: str = typer.Argument(..., help="Proposal id"),
    note: str | None = typer.Option(None, "--note", help="Note for the agent"),
    user: str = typer.Option("operator", "--user", "-u", help="Operator id"),
) -> None:
    """Approve a pending plan and let the operator agent continue."""

    _decide(proposal_id, approved=True, note=note, user=user)


@app.command()
def deny(
    proposal_id: str = typer.Argument(..., help="Proposal id"),
    note: str | None = typer.Option(None, "--note", help="Note for the agent"),
    user: str = typer.Option("operator", "--user", "-u", help="Operator id"),
) -> None:
    """Deny a pending plan."""

    _decide(proposal_id, approved=False, note=note, user=user)


@app.command()
def keygen() -> None:
    """Print a fresh content encryption key."""

    typer.echo(ContentCipher.generate_key())


def main() -> None:
    try:
        app()
    except SanctuaryError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise SystemExit(1) from exc

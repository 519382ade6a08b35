"""Command line entry point."""

from __future__ import annotations

import asyncio
import json

import typer
from rich.console import Console
from rich.table import Table

from duplex.config import Settings, get_settings
from duplex.errors import DuplexError
from duplex.live.events import EventType, OutboundEvent
from duplex.live.items import ContentPart
from duplex.logging_utils import configure_logging
from duplex.runtime import LiveRuntime

app = typer.Typer(name="duplex", help="Concurrent tool scheduling for live sessions", add_completion=False)
console = Console()

_EVENT_STYLES = {
    EventType.TURN_PARTIAL: "white",
    EventType.TOOL_ANNOUNCED: "cyan",
    EventType.TOOL_PARTIAL: "blue",
    EventType.TOOL_OUTCOME: "green",
    EventType.TURN_COMPLETE: "bold",
    EventType.INTERRUPTED: "yellow",
    EventType.SESSION_CLOSED: "magenta",
}


def _settings(**overrides: object) -> Settings:
    try:
        return get_settings(**overrides)
    except DuplexError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2) from exc


def _render(event: OutboundEvent) -> str:
    payload = json.dumps(event.payload, ensure_ascii=False, default=str)
    subject = f" {event.invocation_id[:8]}" if event.invocation_id else ""
    return f"{event.seq:>4} {event.type}{subject} {payload}"


async def _run_once(settings: Settings, session_id: str, message: str) -> list[OutboundEvent]:
    seen: list[OutboundEvent] = []
    async with LiveRuntime(settings) as runtime:
        session = runtime.submit(session_id, ContentPart.text(message))
        async for event in session.events():
            seen.append(event)
            console.print(_render(event), style=_EVENT_STYLES.get(event.type), markup=False, highlight=False)
            if event.type is EventType.TURN_COMPLETE:
                await session.close()
    return seen


@app.command("run")
def run(
    message: str = typer.Argument(..., help="User text; lines like `$text.upper {\"text\": \"hi\"}` call tools"),
    session_id: str = typer.Option("local", "--session-id", help="Session id"),
    pool_capacity: int | None = typer.Option(None, "--pool-capacity", help="Worker slots for blocking tools"),
    timeout: float | None = typer.Option(None, "--timeout", help="Per-invocation deadline in seconds"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
) -> None:
    """Drive one session turn with the builtin plugin and print every outbound event."""

    configure_logging(profile="chat", level=log_level)
    settings = _settings(pool_capacity=pool_capacity, invocation_timeout_seconds=timeout)
    asyncio.run(_run_once(settings, session_id.strip() or "local", message.replace("\\n", "\n")))


@app.command("tools")
def list_tools() -> None:
    """List registered tools with their execution mode."""

    runtime = LiveRuntime(_settings())
    table = Table("name", "mode", "streaming", "parameters")
    for descriptor in runtime.registry.descriptors():
        table.add_row(
            descriptor.name,
            str(descriptor.mode),
            "yes" if descriptor.streaming else "no",
            json.dumps(descriptor.parameters.get("properties", {}), ensure_ascii=False),
        )
    console.print(table)
    runtime.pool.shutdown()


@app.command("hooks")
def list_hooks() -> None:
    """Show hook implementation mapping."""

    runtime = LiveRuntime(_settings())
    report = runtime.hook_report()
    if not report:
        typer.echo("(no hook implementations)")
    for hook_name, plugins in report.items():
        typer.echo(f"{hook_name}: {', '.join(plugins)}")
    runtime.pool.shutdown()

"""Command-line interface for the communication intelligence engine.

Provides commands for configuration validation, thread ingestion,
reprocessing, item review (convert/dismiss), archiving, and the scheduler.

Usage:
    python -m commintel validate-config
    python -m commintel ingest thread.json
    python -m commintel reprocess thread-123
    python -m commintel items thread-123 --ranked
    python -m commintel convert <item-id> --assignee alice@firm.com
    python -m commintel schedule
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from commintel.config import validate_config_file
from commintel.core.errors import CommIntelError
from commintel.core.logging import configure_logging

if TYPE_CHECKING:
    from commintel.config_schema import AppConfig
    from commintel.db.store import DatabaseStore
    from commintel.engine.service import IntelligenceEngine
    from commintel.extraction.claude_extractor import ClaudeExtractor
    from commintel.extraction.models import ExtractedItem
    from commintel.tasks.http_creator import HttpTaskCreator

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    extractor: ClaudeExtractor
    task_creator: HttpTaskCreator
    engine: IntelligenceEngine


async def _init_cli_deps() -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, initializes the DB, the Anthropic client and the task
    service client, and assembles the engine. Prints actionable error
    messages and calls sys.exit(1) on failure.
    """
    import anthropic as anthropic_mod

    from commintel.config import get_config
    from commintel.core.errors import ConfigLoadError, ConfigValidationError
    from commintel.db.store import DatabaseStore
    from commintel.engine.service import IntelligenceEngine
    from commintel.extraction.claude_extractor import ClaudeExtractor
    from commintel.tasks.http_creator import HttpTaskCreator

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and adjust it."
        )
        sys.exit(1)

    # 2. Initialize database
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    # 3. Initialize external capabilities
    anthropic_client = anthropic_mod.Anthropic(max_retries=3)
    extractor = ClaudeExtractor(anthropic_client=anthropic_client, store=store, config=config)
    task_creator = HttpTaskCreator(
        base_url=config.task_bridge.base_url,
        token=os.environ.get(config.task_bridge.token_env),
        timeout_seconds=config.task_bridge.timeout_seconds,
    )

    return CLIDeps(
        config=config,
        store=store,
        extractor=extractor,
        task_creator=task_creator,
        engine=IntelligenceEngine.build(store, extractor, task_creator, config),
    )


def _run(coro) -> None:
    """Run a command coroutine, printing engine errors and exiting 1."""
    try:
        asyncio.run(coro)
    except CommIntelError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


def _describe(item: ExtractedItem) -> str:
    return item.payload.primary_text()


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Communication intelligence - deadlines, commitments and action items from threads."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for the scheduler
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("ingest")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--reprocess/--no-reprocess", default=False, help="Extract items right after ingesting")
def ingest(payload_file: Path, reprocess: bool) -> None:
    """Ingest a thread payload from a JSON file."""
    try:
        payload = json.loads(payload_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Error:[/red] Cannot read {payload_file}: {e}")
        sys.exit(1)
    _run(_ingest(payload, reprocess))


async def _ingest(payload: dict, reprocess: bool) -> None:
    deps = await _init_cli_deps()
    thread = await deps.engine.ingest(payload, triggered_by="cli")
    console.print(
        f"[green]✓[/green] Thread [cyan]{thread.id}[/cyan]: "
        f"{len(thread.messages)} messages, {len(thread.participants)} participants"
    )
    if reprocess:
        await _print_reprocess(deps.engine, thread.id)


@cli.command("reprocess")
@click.argument("thread_id")
def reprocess(thread_id: str) -> None:
    """Extract items from a thread's new messages."""
    _run(_reprocess(thread_id))


async def _reprocess(thread_id: str) -> None:
    deps = await _init_cli_deps()
    await _print_reprocess(deps.engine, thread_id)


async def _print_reprocess(engine: IntelligenceEngine, thread_id: str) -> None:
    result = await engine.reprocess(thread_id)
    colour = {"succeeded": "green", "failed": "red"}.get(result.status, "yellow")
    console.print(
        f"Reprocess [cyan]{thread_id}[/cyan]: [{colour}]{result.status}[/{colour}] "
        f"candidates={result.candidates} dropped={result.dropped} "
        f"created={result.items_created} ({result.duration_ms}ms)"
    )
    if result.error:
        console.print(f"  [dim]{result.error}[/dim]")


@cli.command("reprocess-pending")
@click.option("--limit", type=int, default=None, help="Max threads (default: scheduler.batch_size)")
def reprocess_pending(limit: int | None) -> None:
    """Run one reprocess cycle over pending and failed threads."""
    _run(_reprocess_pending(limit))


async def _reprocess_pending(limit: int | None) -> None:
    deps = await _init_cli_deps()
    result = await deps.engine.reprocess_pending(limit)

    console.print(f"\n[bold]Reprocess Cycle Summary[/bold] (cycle {result.cycle_id[:8]}...)")
    console.print(f"  Duration:    {result.duration_ms}ms")
    console.print(f"  Attempted:   {result.threads_attempted}")
    console.print(f"  Succeeded:   {result.succeeded}")
    console.print(f"  Skipped:     {result.skipped}")
    console.print(f"  Failed:      {result.failed}")
    console.print(f"  Cancelled:   {result.cancelled}")
    console.print(f"  New items:   {result.items_created}")


@cli.command("items")
@click.argument("thread_id")
@click.option(
    "--state",
    type=click.Choice(["open", "converted", "dismissed"]),
    default=None,
    help="Only items in this state",
)
@click.option("--ranked", is_flag=True, default=False, help="Sort by confidence policy score")
def items(thread_id: str, state: str | None, ranked: bool) -> None:
    """List a thread's extracted items."""
    _run(_items(thread_id, state, ranked))


async def _items(thread_id: str, state: str | None, ranked: bool) -> None:
    deps = await _init_cli_deps()
    await deps.engine.get_thread(thread_id)
    found = await deps.engine.list_items(thread_id, state=state, ranked=ranked)
    if not found:
        console.print(f"No items for thread [cyan]{thread_id}[/cyan]")
        return

    table = Table(title=f"Items for {thread_id}")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Confidence")
    table.add_column("State")
    table.add_column("Text")
    table.add_column("Task")
    for item in found:
        table.add_row(
            item.id[:8],
            item.variant.value,
            item.confidence.value,
            item.state.value,
            _describe(item),
            item.converted_task_id or "",
        )
    console.print(table)

    counts = await deps.engine.item_counts(thread_id)
    console.print(
        "  " + "  ".join(f"{name}={count}" for name, count in counts["state"].items())
    )


@cli.command("preview")
@click.argument("item_id")
@click.option("--assignee", default=None, help="Assignee override")
def preview(item_id: str, assignee: str | None) -> None:
    """Show the task converting an item would create."""
    _run(_preview(item_id, assignee))


async def _preview(item_id: str, assignee: str | None) -> None:
    deps = await _init_cli_deps()
    result = await deps.engine.preview_conversion(item_id, assignee_override=assignee)
    console.print(f"[bold]Item {result.item.id}[/bold] (score {result.score:.2f})")
    console.print_json(json.dumps(result.task.to_dict()))


@cli.command("convert")
@click.argument("item_id")
@click.option("--assignee", default=None, help="Assignee override")
@click.option(
    "--expected-state",
    type=click.Choice(["open", "converted", "dismissed"]),
    default=None,
    help="Fail with a conflict if the item is not in this state",
)
def convert(item_id: str, assignee: str | None, expected_state: str | None) -> None:
    """Create an external task from an Open item."""
    _run(_convert(item_id, assignee, expected_state))


async def _convert(item_id: str, assignee: str | None, expected_state: str | None) -> None:
    deps = await _init_cli_deps()
    try:
        item = await deps.engine.convert(
            item_id, assignee_override=assignee, expected_state=expected_state, triggered_by="cli"
        )
    finally:
        deps.task_creator.close()
    console.print(f"[green]✓[/green] Item {item.id} converted to task [cyan]{item.converted_task_id}[/cyan]")


@cli.command("dismiss")
@click.argument("item_id")
@click.argument(
    "reason",
    type=click.Choice(["NotRelevant", "AlreadyHandled", "IncorrectInformation", "Other"]),
)
@click.option("--note", default=None, help="Free-text note")
@click.option(
    "--expected-state",
    type=click.Choice(["open", "converted", "dismissed"]),
    default=None,
    help="Fail with a conflict if the item is not in this state",
)
def dismiss(item_id: str, reason: str, note: str | None, expected_state: str | None) -> None:
    """Dismiss an Open item."""
    _run(_dismiss(item_id, reason, note, expected_state))


async def _dismiss(item_id: str, reason: str, note: str | None, expected_state: str | None) -> None:
    deps = await _init_cli_deps()
    item = await deps.engine.dismiss(
        item_id, reason, note=note, expected_state=expected_state, triggered_by="cli"
    )
    console.print(f"[green]✓[/green] Item {item.id} dismissed ({item.dismiss_reason.value})")


@cli.command("relink")
@click.argument("item_id")
@click.argument("task_id")
def relink(item_id: str, task_id: str) -> None:
    """Point a Converted item at a different task id."""
    _run(_relink(item_id, task_id))


async def _relink(item_id: str, task_id: str) -> None:
    deps = await _init_cli_deps()
    item = await deps.engine.relink_task(item_id, task_id, triggered_by="cli")
    console.print(f"[green]✓[/green] Item {item.id} now linked to task [cyan]{item.converted_task_id}[/cyan]")


@cli.command("archive")
@click.argument("thread_id")
def archive(thread_id: str) -> None:
    """Archive a thread. It is never reprocessed again."""
    _run(_archive(thread_id))


async def _archive(thread_id: str) -> None:
    deps = await _init_cli_deps()
    thread = await deps.engine.archive_thread(thread_id, triggered_by="cli")
    console.print(f"[green]✓[/green] Thread {thread.id} archived at {thread.archived_at.isoformat()}")


@cli.command("schedule")
def schedule() -> None:
    """Run reprocess_pending on the configured interval until interrupted."""
    configure_logging(log_level="INFO", json_output=True)
    try:
        asyncio.run(_run_scheduler())
    except KeyboardInterrupt:
        console.print("\nShutting down...")
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_scheduler() -> None:
    """Run the engine's pending cycle with APScheduler, reloading config each cycle."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from commintel.config import get_config, reload_config_if_changed

    deps = await _init_cli_deps()
    engine = deps.engine

    async def run_cycle():
        if reload_config_if_changed():
            config = get_config()
            deps.extractor.update_config(config)
            engine.update_config(config)
        result = await engine.reprocess_pending()
        console.print(
            f"[dim]Cycle {result.cycle_id[:8]}...[/dim] "
            f"attempted={result.threads_attempted} succeeded={result.succeeded} "
            f"failed={result.failed} created={result.items_created} ({result.duration_ms}ms)"
        )

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_cycle,
        "interval",
        minutes=deps.config.scheduler.interval_minutes,
        id="reprocess_pending",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    console.print(
        f"Reprocessing pending threads every {deps.config.scheduler.interval_minutes} minutes. "
        "Press Ctrl+C to stop."
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)
    deps.task_creator.close()


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()

"""CLI commands for threadline."""

import asyncio
import json
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from threadline import __brand__, __logo__, __version__

app = typer.Typer(
    name="threadline",
    help=f"{__logo__} {__brand__} - WhatsApp bridge for assistant threads",
    no_args_is_help=True,
)

console = Console()


def _cli_fail(cause: str, fix: str | None = None, *, exit_code: int = 1) -> None:
    """Print a consistent CLI error block and exit."""
    console.print(f"[red]{cause}[/red]")
    if fix:
        console.print(f"[dim]Fix: {fix}[/dim]")
    raise typer.Exit(exit_code)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} {__brand__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
):
    """threadline - WhatsApp bridge for assistant threads."""
    pass


@app.command("version")
def version_command():
    """Show threadline version."""
    console.print(f"{__logo__} {__brand__} v{__version__}")


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """Create or update the threadline configuration file."""
    from threadline.config.loader import (
        convert_keys,
        convert_to_camel,
        deep_merge_config,
        get_config_path,
        load_config,
        save_config,
    )
    from threadline.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        existing_data = convert_to_camel(load_config().model_dump())
        default_data = convert_to_camel(Config().model_dump())
        merged = Config.model_validate(convert_keys(deep_merge_config(existing_data, default_data)))
        save_config(merged)
        console.print("[green]✓[/green] Merged config (existing values preserved)")
        console.print(f"  {config_path}")
    else:
        save_config(Config())
        console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} {__brand__} is ready!")
    console.print("  Set [cyan]assistant.apiKey[/cyan] and [cyan]assistant.assistantId[/cyan], then run:")
    console.print("  [cyan]threadline gateway[/cyan]")


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Start the WhatsApp bridge gateway."""
    from threadline.assistant.dispatcher import Dispatcher
    from threadline.assistant.registry import JsonThreadStore, ThreadRegistry
    from threadline.assistant.stager import AttachmentStager
    from threadline.assistant.watcher import RunWatcher
    from threadline.bus.queue import MessageBus
    from threadline.channels.manager import ChannelManager
    from threadline.config.loader import get_config_path, load_config
    from threadline.observability.metrics import MetricsStore
    from threadline.providers.factory import build_backend

    _configure_logging(verbose)
    config = load_config()

    assistant_id = config.get_assistant_id()
    if not assistant_id:
        _cli_fail(
            "No assistant id configured.",
            f"Set assistant.assistantId in {get_config_path()} or ASSISTANT_ID",
        )
    try:
        backend = build_backend(config)
    except ValueError as e:
        _cli_fail(str(e), f"Set assistant.apiKey in {get_config_path()}")

    console.print(f"{__logo__} Starting {__brand__} gateway...")

    bus = MessageBus()
    registry = ThreadRegistry(JsonThreadStore(config.threads_path))
    runs = config.runs
    dispatcher = Dispatcher(
        bus=bus,
        backend=backend,
        registry=registry,
        stager=AttachmentStager(backend, staging_dir=config.staging_path),
        watcher=RunWatcher(
            backend,
            assistant_id=assistant_id,
            budget_increment=runs.budget_increment,
            message_page_size=runs.message_page_size,
        ),
        initial_budget=runs.initial_budget,
        timeout_s=runs.timeout_seconds,
        poll_interval_s=runs.poll_interval_seconds,
        metrics=MetricsStore(config.metrics_path),
    )
    channels = ChannelManager(config, bus)

    console.print(f"[green]✓[/green] Threads: {len(registry)} contact(s) in {config.threads_path}")
    if channels.channels:
        console.print(f"[green]✓[/green] Channels enabled: {', '.join(channels.channels)}")
    else:
        console.print("[yellow]Warning: No channels enabled[/yellow]")

    async def run():
        try:
            await asyncio.gather(dispatcher.run(), channels.start_all())
        except KeyboardInterrupt:
            console.print("\nShutting down...")
        finally:
            await dispatcher.shutdown()
            await channels.stop_all()
            await backend.aclose()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nStopped.")


# ============================================================================
# Threads
# ============================================================================


threads_app = typer.Typer(help="Inspect contact threads")
app.add_typer(threads_app, name="threads")


@threads_app.callback(invoke_without_command=True)
def threads_main(ctx: typer.Context):
    """Inspect contact threads."""
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


def _load_registry():
    from threadline.assistant.registry import JsonThreadStore, ThreadRegistry
    from threadline.config.loader import load_config

    config = load_config()
    return config, ThreadRegistry(JsonThreadStore(config.threads_path))


@threads_app.command("list")
def threads_list():
    """List contacts and their thread ids."""
    config, registry = _load_registry()
    contacts = registry.contacts()
    if not contacts:
        console.print(f"No threads registered in {config.threads_path}")
        return

    table = Table(title="Contact Threads")
    table.add_column("Contact", style="cyan")
    table.add_column("Thread", style="green")
    for contact_id, thread_id in sorted(contacts.items()):
        table.add_row(contact_id, thread_id)
    console.print(table)


@threads_app.command("show")
def threads_show(contact: str = typer.Argument(..., help="Contact id (chat JID)")):
    """Show the thread bound to one contact."""
    _, registry = _load_registry()
    thread_id = registry.lookup(contact)
    if thread_id is None:
        _cli_fail(f"No thread for {contact}")
    console.print(thread_id)


# ============================================================================
# Channels
# ============================================================================


channels_app = typer.Typer(help="Manage channels")
app.add_typer(channels_app, name="channels")


@channels_app.callback(invoke_without_command=True)
def channels_main(ctx: typer.Context):
    """Manage channels."""
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


@channels_app.command("status")
def channels_status():
    """Show channel status."""
    from threadline.config.loader import load_config

    config = load_config()

    table = Table(title="Channel Status")
    table.add_column("Channel", style="cyan")
    table.add_column("Enabled", style="green")
    table.add_column("Configuration", style="yellow")

    wa = config.channels.whatsapp
    auth = "token set" if wa.bridge_token else "no token"
    table.add_row("WhatsApp", "✓" if wa.enabled else "✗", f"{wa.bridge_url} ({auth})")

    console.print(table)


# ============================================================================
# Metrics
# ============================================================================


@app.command("metrics")
def metrics_cmd(
    hours: int = typer.Option(24, "--hours", "-w", help="Metrics window in hours"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON snapshot"),
):
    """Show relay metrics snapshot."""
    from threadline.config.loader import load_config
    from threadline.observability.metrics import MetricsStore

    config = load_config()
    snapshot = MetricsStore(config.metrics_path).snapshot(hours=hours)

    if as_json:
        console.print(json.dumps(snapshot, indent=2, ensure_ascii=False))
        return

    relay = snapshot["relay"]
    uploads = snapshot["uploads"]
    table = Table(title=f"Relay Metrics ({snapshot['window_hours']}h)")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Messages", str(relay["messages"]))
    table.add_row("Replies delivered", f"{relay['delivered']} ({relay['delivery_rate']}%)")
    table.add_row("Runs completed", f"{relay['completion_rate']}%")
    table.add_row("Budget escalations", str(relay["escalations"]))
    table.add_row("New threads", str(relay["new_threads"]))
    table.add_row("Relay latency p95", f"{relay['latency_p95_ms']} ms")
    table.add_row("Uploads", f"{uploads['count']} ({uploads['success_rate']}% ok)")
    console.print(table)

    for item in relay["outcomes"]:
        console.print(f"  {item['outcome']}: {item['count']}")

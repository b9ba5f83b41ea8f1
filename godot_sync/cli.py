"""
CLI commands for godot-sync.

Provides the `godot-sync` command-line interface for running the sync
engine and managing the saved source/target configuration.
"""

import asyncio
import logging
import os
import signal
import sys
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config.defaults import ENV_VAR_MAPPING, OPTION_KEYS
from config.loader import ConfigurationLoader
from core.errors import ConfigurationError
from core.models.config import SyncConfiguration, SyncSettings, normalize_extensions
from core.sync import EngineState, SyncEngine

from . import __version__

console = Console()


def _timestamped(message: str) -> str:
    return f"[{datetime.now().strftime('%H:%M:%S')}] {message}"


def _host_log(loader: ConfigurationLoader, message: str) -> None:
    """Record a host-level message in the persisted log"""
    loader.append_log(_timestamped(message))


class LogBuffer:
    """
    Holds engine log lines in memory and persists them in batches.

    Engine logging happens on the event loop; each persisted write rewrites
    the whole state file, so lines are only written every flush interval
    and once more when the run ends.
    """

    def __init__(self, loader: ConfigurationLoader, flush_interval: float):
        self.loader = loader
        self.flush_interval = flush_interval
        self._lines: Deque[str] = deque(maxlen=loader.max_log_lines)
        self._flush_task: Optional[asyncio.Task] = None
        self._write: Optional[asyncio.Future] = None

    def append(self, line: str) -> None:
        self._lines.append(line)

    def take(self) -> List[str]:
        lines = list(self._lines)
        self._lines.clear()
        return lines

    def flush(self) -> None:
        self.loader.append_log_lines(self.take())

    def start(self) -> None:
        self._flush_task = asyncio.create_task(self._flush_periodically())

    async def stop(self) -> None:
        """Stop periodic flushing and persist whatever is left"""
        if self._flush_task is not None:
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
            self._flush_task = None
        # A write already handed to a thread must land before the final one
        if self._write is not None:
            await asyncio.gather(self._write, return_exceptions=True)
            self._write = None
        self.flush()

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            lines = self.take()
            if lines:
                self._write = asyncio.ensure_future(
                    asyncio.to_thread(self.loader.append_log_lines, lines)
                )
                await asyncio.shield(self._write)
                self._write = None


@click.group()
@click.version_option(version=__version__, prog_name="godot-sync")
@click.option(
    '--config-dir',
    type=click.Path(file_okay=False, path_type=Path),
    help='Directory holding config.json (default: ~/.godot-sync)'
)
@click.pass_context
def main(ctx: click.Context, config_dir: Optional[Path]):
    """
    Godot Sync CLI.

    Mirror script and resource files from a source folder into a Godot
    project while you edit them.
    """
    settings = SyncSettings()
    if config_dir is not None:
        settings = settings.model_copy(update={"config_dir": config_dir})

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    ctx.ensure_object(dict)
    ctx.obj['settings'] = settings
    ctx.obj['loader'] = ConfigurationLoader(settings)


@main.command()
@click.option('--source', '-s', help='Source directory to watch')
@click.option('--target', '-t', help='Target Godot project directory')
@click.option(
    '--ext', 'extensions',
    multiple=True,
    help='Extension to sync; repeat or pass a comma-separated list'
)
@click.option('--allow-deletion/--no-allow-deletion', default=None, help='Mirror source deletions')
@click.option('--include-hidden/--no-include-hidden', default=None, help='Sync dot-prefixed files and folders')
@click.option('--poll/--no-poll', 'use_polling', default=None, help='Use stat polling instead of native events')
@click.option('--sync-import/--no-sync-import', 'sync_import', default=None, help='Sync .import metadata files')
@click.option('--save', is_flag=True, help='Save the given options for later runs')
@click.pass_context
def run(
    ctx: click.Context,
    source: Optional[str],
    target: Optional[str],
    extensions: Tuple[str, ...],
    allow_deletion: Optional[bool],
    include_hidden: Optional[bool],
    use_polling: Optional[bool],
    sync_import: Optional[bool],
    save: bool
):
    """Start syncing and keep running until interrupted."""
    loader: ConfigurationLoader = ctx.obj['loader']
    settings: SyncSettings = ctx.obj['settings']

    overrides = {
        'sourceDir': source,
        'targetDir': target,
        'extensions': ', '.join(extensions) if extensions else None,
        'allowDeletion': allow_deletion,
        'includeHidden': include_hidden,
        'usePolling': use_polling,
        'syncImportArtifacts': sync_import,
    }

    if save:
        try:
            loader.save_options(overrides)
        except (KeyError, ValueError) as e:
            console.print(f"[red]❌ Failed to save options: {escape(str(e))}[/red]")
            sys.exit(1)
        console.print(f"[green]✅ Options saved to {loader.config_file}[/green]")

    options = loader.build_options(overrides)

    if not options.get('sourceDir') or not options.get('targetDir'):
        _host_log(loader, "Start failed: Missing source or target directory.")
        console.print("[red]❌ Please set both source and target directories.[/red]")
        console.print("[yellow]💡 Use --source/--target or 'godot-sync config set sourceDir PATH'[/yellow]")
        sys.exit(1)

    if not normalize_extensions(options.get('extensions') or ''):
        _host_log(loader, "Start failed: No extensions defined.")
        console.print("[red]❌ Please define file extensions to sync (--ext).[/red]")
        sys.exit(1)

    try:
        exit_code = asyncio.run(_run_engine(loader, settings, options))
    except KeyboardInterrupt:
        exit_code = 0

    if exit_code:
        sys.exit(exit_code)


async def _run_engine(
    loader: ConfigurationLoader,
    settings: SyncSettings,
    options: Dict[str, Any]
) -> int:
    """Run one engine until it stops or the process is interrupted"""

    log_buffer = LogBuffer(loader, settings.log_flush_interval_s)

    def on_log(line: str) -> None:
        console.print(line, markup=False, highlight=False)
        log_buffer.append(line)

    def on_status(running: bool) -> None:
        if running:
            console.print("[green]● Sync running[/green] [dim](Ctrl+C to stop)[/dim]")
        else:
            console.print("[dim]○ Sync stopped[/dim]")

    def on_alert(message: str) -> None:
        console.print(f"[red]❌ {escape(message)}[/red]")

    engine = SyncEngine(
        log_sink=on_log,
        status_sink=on_status,
        alert_sink=on_alert,
        settings=settings
    )

    if not engine.start(options):
        log_buffer.flush()
        return 1

    loop = asyncio.get_running_loop()
    interrupted = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, interrupted.set)
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop signal handlers on Windows or outside the main thread
            pass

    log_buffer.start()
    stopped_waiter = asyncio.create_task(engine.wait_for_state(EngineState.STOPPED))
    interrupt_waiter = asyncio.create_task(interrupted.wait())
    try:
        await asyncio.wait({stopped_waiter, interrupt_waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in (stopped_waiter, interrupt_waiter):
            waiter.cancel()
        try:
            if engine.state != EngineState.STOPPED:
                await engine.stop()
        finally:
            await log_buffer.stop()

    return 1 if engine.last_fatal_error else 0


@main.group(name='config')
def config_group():
    """Inspect or change saved options."""
    pass


@config_group.command(name='show')
@click.pass_context
def config_show(ctx: click.Context):
    """Show saved options and the values a run would use."""
    loader: ConfigurationLoader = ctx.obj['loader']
    saved = loader.get_saved_options()
    effective = loader.build_options()
    env_keys = {key for env_var, key in ENV_VAR_MAPPING.items() if env_var in os.environ}

    table = Table(title=f"Godot Sync Configuration ({loader.config_file})")
    table.add_column("Option", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_column("Source", style="dim")

    for key in OPTION_KEYS:
        if key in env_keys:
            origin = "environment"
        elif key in saved:
            origin = "saved"
        elif key == 'syncImportArtifacts':
            origin = "derived"
        else:
            origin = "default"
        value = effective.get(key)
        table.add_row(key, escape(str(value)) if value is not None else "[dim]unset[/dim]", origin)

    console.print(table)


@config_group.command(name='set')
@click.argument('key', type=click.Choice(list(OPTION_KEYS)))
@click.argument('value')
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str):
    """Save one option (use 'none' to clear it)."""
    loader: ConfigurationLoader = ctx.obj['loader']

    raw: Optional[str] = None if value.strip().lower() in ('none', 'null', '') else value
    try:
        stored = loader.set_option(key, raw)
    except ValueError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        sys.exit(1)

    if key == 'sourceDir':
        _host_log(loader, f"Source folder set to: {stored}")
    elif key == 'targetDir':
        _host_log(loader, f"Target folder set to: {stored}")
    elif key == 'extensions':
        _host_log(loader, f"Extensions updated to: {stored}")

    if stored is None:
        console.print(f"[green]✅ {key} cleared[/green]")
    else:
        console.print(f"[green]✅ {key} = {escape(str(stored))}[/green]")


@main.command()
@click.option('--lines', '-n', type=click.IntRange(min=0), default=None, help='Show only the last N lines')
@click.option('--clear', is_flag=True, help='Clear the persisted log')
@click.pass_context
def log(ctx: click.Context, lines: Optional[int], clear: bool):
    """Print the persisted recent log."""
    loader: ConfigurationLoader = ctx.obj['loader']

    if clear:
        loader.clear_log()
        console.print("[green]✅ Log cleared[/green]")
        return

    entries = loader.recent_log(lines)
    if not entries:
        console.print("[dim]Log is empty.[/dim]")
        return
    for line in entries:
        console.print(line, markup=False, highlight=False)


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Check whether the saved options are ready to run."""
    loader: ConfigurationLoader = ctx.obj['loader']
    options = loader.build_options()

    table = Table(title="Godot Sync Status")
    table.add_column("Component", style="cyan", no_wrap=True)
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")

    for key, label in (('sourceDir', 'Source'), ('targetDir', 'Target')):
        value = options.get(key)
        if not value:
            table.add_row(label, "[red]❌ Not set[/red]", f"godot-sync config set {key} PATH")
        elif Path(value).expanduser().is_dir():
            table.add_row(label, "[green]✅ Found[/green]", escape(str(value)))
        else:
            table.add_row(label, "[red]❌ Missing[/red]", escape(str(value)))

    extensions = normalize_extensions(options.get('extensions') or '')
    if extensions:
        table.add_row("Extensions", f"[green]✅ {len(extensions)}[/green]", ", ".join(sorted(extensions)))
    else:
        table.add_row("Extensions", "[red]❌ None[/red]", "godot-sync config set extensions .gd,.tscn")

    table.add_row(
        "Deletion",
        "[yellow]Enabled[/yellow]" if options.get('allowDeletion') else "Disabled",
        "Source deletions are mirrored" if options.get('allowDeletion') else "Target files are never removed"
    )

    config_valid = True
    try:
        SyncConfiguration.from_options(options)
        table.add_row("Configuration", "[green]✅ Valid[/green]", "Ready to run")
    except ConfigurationError as e:
        config_valid = False
        table.add_row("Configuration", "[red]❌ Invalid[/red]", escape(str(e)))

    console.print(table)

    if config_valid:
        console.print("\n[green]🎉 Ready. Start syncing with: [bold]godot-sync run[/bold][/green]")
    else:
        console.print("\n[yellow]⚠️  Fix the configuration before running.[/yellow]")

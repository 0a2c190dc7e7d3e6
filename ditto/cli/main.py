"""
Ditto CLI - Record once, replay over every row.
"""

import logging
import signal

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.panel import Panel

from ditto.core.config import RunConfig
from ditto.core.driver_factory import BrowserPageProvider, create_driver
from ditto.core.errors import ProjectNotFoundError
from ditto.core.models import Sequence
from ditto.core.orchestrator import BatchOrchestrator
from ditto.core.results import RowStatus, StepStatus
from ditto.core.session import CancellationToken, SessionRegistry
from ditto.core.tabular import load_rows, parse_mappings
from ditto.layers.record.recorder import RecordingStateMachine, StepCollector
from ditto.storage.project_store import ProjectStore

console = Console()

DEFAULT_STORE = "./.ditto"

# One registry per process: recordings and runs of a project never overlap.
registry = SessionRegistry()

STATUS_STYLE = {
    StepStatus.PASSED: "[green]✅ passed[/green]",
    StepStatus.FAILED: "[red]❌ failed[/red]",
    StepStatus.SKIPPED: "[yellow]⏭ skipped[/yellow]",
    StepStatus.NOT_RUN: "[dim]not run[/dim]",
}

ROW_STYLE = {
    RowStatus.PASSED: "[green]✅ passed[/green]",
    RowStatus.FAILED: "[red]❌ failed[/red]",
    RowStatus.SKIPPED: "[yellow]⏭ skipped[/yellow]",
    RowStatus.CANCELLED: "[dim]cancelled[/dim]",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _load_project(store: ProjectStore, project_id: str) -> Sequence:
    try:
        return store.get(project_id)
    except ProjectNotFoundError:
        console.print(f"[red]❌ Project '{project_id}' not found in {store.root_dir}[/red]")
        raise SystemExit(1)


@click.group()
@click.version_option(version="0.1.0", prog_name="ditto")
@click.option('--verbose', '-v', is_flag=True, help='Show debug logging')
def cli(verbose):
    """🪞 Ditto - Record once, replay over every row

    Capture a web form interaction once, then replay it for each row of a CSV.
    """
    _setup_logging(verbose)


@cli.command()
@click.argument('url')
@click.option('--project', '-p', 'project_id', required=True, help='Project id to save the recording under')
@click.option('--store', 'store_dir', default=DEFAULT_STORE, help='Project store directory')
@click.option('--headless/--headed', default=False, help='Run browser in headless mode')
@click.option('--profile', 'profile_path', default=None, help='Browser profile directory (keeps logins)')
def record(url, project_id, store_dir, headless, profile_path):
    """
    Record interactions on URL until Ctrl+C.

    \b
    Example:

        ditto record "https://example.com/signup" --project signup
    """
    console.print(Panel.fit(
        f"[bold blue]🔴 Recording[/bold blue]\n"
        f"[dim]{url}[/dim]",
        border_style="blue"
    ))
    console.print("[dim]Interact with the page. Press Ctrl+C to stop and save.[/dim]\n")

    store = ProjectStore(store_dir)
    sequence = Sequence(project_id=project_id, start_url=url)
    if store.exists(project_id):
        previous = store.get(project_id)
        sequence.mappings = previous.mappings
        sequence.rows = previous.rows
        if previous.loop_start:
            console.print("[yellow]⚠️ Re-recording clears the loop start step[/yellow]")

    def on_change(step, appended):
        marker = "[green]+[/green]" if appended else "[yellow]~[/yellow]"
        value = f" = {step.value!r}" if step.value is not None else ""
        console.print(f"  {marker} [cyan]{step.action.value.upper()}[/cyan] {step.label}{value}")

    collector = StepCollector(sequence, on_change=on_change)
    driver = create_driver(headless=headless, profile_path=profile_path)
    token = CancellationToken()
    try:
        driver.get(url)
        machine = RecordingStateMachine(driver, project_id, on_step=collector, registry=registry)
        try:
            machine.record(token)
        except KeyboardInterrupt:
            token.cancel()
    finally:
        driver.quit()

    store.put(sequence)
    console.print(f"\n[bold green]✅ Saved {len(sequence)} steps to '{project_id}'[/bold green]")


@cli.command()
@click.argument('project_id')
@click.option('--csv', 'csv_path', type=click.Path(exists=True, dir_okay=False), help='CSV file, one replay per row')
@click.option('--map', 'mapping_pairs', multiple=True, metavar='COLUMN=LABEL', help='Map a CSV column to a step label')
@click.option('--delay-ms', type=int, default=None, help='Fixed delay before every step (default: random 1-3s)')
@click.option('--headless/--headed', default=None, help='Run browser in headless mode')
@click.option('--report-dir', default=None, help='Report output directory')
@click.option('--loop-start', type=click.IntRange(min=0), default=None, metavar='STEP',
              help='Rows after the first start at this step (1-based, 0 to clear)')
@click.option('--stability/--no-stability', default=None, help='Wait for DOM quiescence via waitless')
@click.option('--profile', 'profile_path', default=None, help='Browser profile directory (keeps logins)')
@click.option('--store', 'store_dir', default=DEFAULT_STORE, help='Project store directory')
def run(project_id, csv_path, mapping_pairs, delay_ms, headless, report_dir, loop_start, stability,
        profile_path, store_dir):
    """
    Replay a recorded project once per data row.

    \b
    Examples:

        ditto run signup --csv users.csv

        ditto run signup --csv users.csv --map "E-mail=Email" --delay-ms 500 --headless

        ditto run signup --csv users.csv --loop-start 4
    """
    store = ProjectStore(store_dir)
    sequence = _load_project(store, project_id)

    try:
        mappings = parse_mappings(mapping_pairs)
        config = RunConfig.from_env(
            headless=headless,
            global_delay_ms=delay_ms,
            report_dir=report_dir,
            stability=stability,
            profile_path=profile_path,
        ).validate()
        if loop_start is not None:
            sequence.set_loop_start(loop_start - 1 if loop_start > 0 else None)
    except ValueError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise SystemExit(2)

    if loop_start is not None:
        sequence = store.update(project_id, loop_start=sequence.loop_start)

    if csv_path:
        sequence = store.update(project_id, rows=load_rows(csv_path))
    if mappings:
        merged = dict(sequence.mappings)
        merged.update(mappings)
        sequence = store.update(project_id, mappings=merged)

    console.print(Panel.fit(
        f"[bold blue]▶ Replaying {project_id}[/bold blue]\n"
        f"[dim]{len(sequence)} steps x {len(sequence.rows) or 1} rows[/dim]",
        border_style="blue"
    ))

    def on_step(row_index, step, outcome):
        status = STATUS_STYLE.get(outcome.status, outcome.status.value)
        via = f" [dim]via {outcome.strategy}[/dim]" if outcome.strategy else ""
        console.print(f"  row {row_index + 1} · {step.label or step.id}: {status}{via}")
        if outcome.failure:
            console.print(f"     [dim]└─ {outcome.failure}[/dim]")

    provider = BrowserPageProvider(
        headless=config.headless,
        script_timeout=config.step_timeout,
        page_load_timeout=config.page_load_timeout,
        load_fallback_delay=config.load_fallback_delay,
        enable_stability=config.stability,
        stability_mode=config.stability_mode,
        profile_path=config.profile_path,
    )
    orchestrator = BatchOrchestrator(provider, config, registry=registry, on_step=on_step)
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: orchestrator.cancel())
    try:
        result = orchestrator.run(sequence)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        orchestrator.close()

    store.append_run(project_id, result)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Row", style="dim", width=5)
    table.add_column("Status", justify="center")
    table.add_column("Passed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Error", max_width=50)
    for row in result.rows:
        table.add_row(
            str(row.row_index + 1),
            ROW_STYLE.get(row.status, row.status.value),
            str(row.count(StepStatus.PASSED)),
            str(row.count(StepStatus.FAILED)),
            str(row.count(StepStatus.SKIPPED)),
            str(row.failure) if row.failure else "",
        )
    console.print()
    console.print(table)

    console.print(
        f"\n[bold]{result.passed} passed, {result.failed} failed, "
        f"{result.skipped} skipped, {result.not_run} not run[/bold] "
        f"[dim]({result.status.value}, {result.duration_seconds:.2f}s)[/dim]"
    )
    if result.report_path:
        console.print(f"[dim]Report: {result.report_path}[/dim]")

    if not result.success:
        raise SystemExit(1)


@cli.command()
@click.argument('project_id')
@click.option('--store', 'store_dir', default=DEFAULT_STORE, help='Project store directory')
def show(project_id, store_dir):
    """Show the recorded steps of a project."""
    sequence = _load_project(ProjectStore(store_dir), project_id)

    console.print(f"[bold]Project:[/bold] {sequence.project_id}")
    console.print(f"[bold]Start URL:[/bold] {sequence.start_url or 'N/A'}")
    console.print(f"[bold]Rows:[/bold] {len(sequence.rows)}")
    if sequence.loop_start:
        console.print(f"[bold]Loop start:[/bold] step {sequence.loop_start + 1}")

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim", width=4)
    table.add_column("Action", style="green")
    table.add_column("Label", style="yellow")
    table.add_column("Value", max_width=30)
    table.add_column("Element", style="dim", max_width=50)
    for i, step in enumerate(sequence.steps, 1):
        marker = " ↻" if sequence.loop_start and i == sequence.loop_start + 1 else ""
        table.add_row(
            f"{i}{marker}",
            step.action.value,
            step.label,
            "" if step.value is None else step.value,
            step.bundle.describe(),
        )
    console.print(table)

    if sequence.mappings:
        console.print("\n[bold]Column mappings:[/bold]")
        for column, label in sequence.mappings.items():
            console.print(f"  {column} → {label}")


@cli.command()
@click.argument('project_id')
@click.option('--store', 'store_dir', default=DEFAULT_STORE, help='Project store directory')
def history(project_id, store_dir):
    """List past runs of a project."""
    store = ProjectStore(store_dir)
    try:
        runs = store.runs(project_id)
    except ProjectNotFoundError:
        console.print(f"[red]❌ Project '{project_id}' not found in {store.root_dir}[/red]")
        raise SystemExit(1)

    if not runs:
        console.print("[dim]No runs yet.[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Run", style="dim")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Passed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    for entry in runs:
        table.add_row(
            entry.get("run_id", ""),
            (entry.get("started_at") or "")[:19].replace("T", " "),
            entry.get("status", ""),
            str(len(entry.get("rows", []))),
            str(entry.get("counts", {}).get("passed", 0)),
            str(entry.get("counts", {}).get("failed", 0)),
        )
    console.print(table)


@cli.command()
@click.argument('project_id')
@click.argument('src', type=int)
@click.argument('dst', type=int)
@click.option('--store', 'store_dir', default=DEFAULT_STORE, help='Project store directory')
def move(project_id, src, dst, store_dir):
    """
    Move step SRC to position DST (1-based, as listed by `ditto show`).
    """
    store = ProjectStore(store_dir)
    sequence = _load_project(store, project_id)
    try:
        warnings = sequence.move_step(src - 1, dst - 1)
    except IndexError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise SystemExit(2)

    store.put(sequence)
    console.print(f"[green]Moved step {src} to position {dst}[/green]")
    for warning in warnings:
        console.print(f"[yellow]⚠️ {warning}[/yellow]")


@cli.command()
def doctor():
    """
    Check system health and dependencies.
    """
    console.print(Panel.fit(
        f"[bold cyan]🩺 Ditto Doctor[/bold cyan]\n"
        f"[dim]System Health Check[/dim]",
        border_style="cyan"
    ))
    console.print()

    dependencies = [
        ("selenium", "Core - WebDriver", True),
        ("click", "CLI", True),
        ("rich", "CLI - Output", True),
        ("waitless", "Action - UI Stability (optional)", False),
    ]

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Package", style="blue")
    table.add_column("Role", style="dim")
    table.add_column("Status", justify="center")

    all_good = True

    for package, role, required in dependencies:
        try:
            __import__(package)
            status = "[green]✅ Installed[/green]"
        except ImportError:
            status = "[red]❌ Missing[/red]" if required else "[yellow]⚠️ Missing[/yellow]"
            all_good = all_good and not required

        table.add_row(package, role, status)

    console.print(table)
    console.print()

    if all_good:
        console.print("[bold green]✅ Ditto is ready.[/bold green]")
    else:
        console.print("[red]❌ Required dependencies are missing.[/red]")
        console.print("[dim]Install with: pip install ditto-replay[/dim]")


@cli.command()
def version():
    """Show version information."""
    from ditto import __version__
    console.print(f"Ditto v{__version__}")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()

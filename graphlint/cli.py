"""Typer-based CLI for graphlint."""

from __future__ import annotations

import logging
import signal
from pathlib import Path
from typing import Dict, List, Optional

import toml
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from . import __version__
from .bundle import load_bundle
from .cache import NullCache, SummaryCache
from .config import Config, load_config
from .errors import CacheError, ConfigError, GraphError, OracleError, RunCancelled, StateError
from .models import SEVERITIES
from .oracle import create_oracle
from .scheduler import PipelineScheduler, ProgressEvent, RunContext, UnitStatus
from .state import ResultAccumulator, RunMetadata, RunState, load_checkpoint

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)
console = Console()

app = typer.Typer(
    help="Dependency-ordered LLM review of call graphs, with caching and resume.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE)
    logging.getLogger("graphlint").setLevel(level)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"graphlint v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    )
):
    """graphlint: review every function of a call graph, callees first."""
    pass


def _load_config_or_exit(config_paths: List[Path], overrides: List[str]) -> Config:
    try:
        return load_config(config_paths, overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=2)


def _open_cache(cfg: Config, no_cache: bool):
    if no_cache or not cfg.cache.enabled:
        return NullCache()
    try:
        return SummaryCache(Path(cfg.cache.dir).expanduser())
    except CacheError as exc:
        logger.warning("Continuing without cache: %s", exc)
        return NullCache()


def _print_summary(state: RunState) -> None:
    console.print(f"\nAnalysis complete: [bold]{state.total_findings}[/bold] finding(s)")
    if state.metadata.cache_hits:
        console.print(f"Cache hits: {state.metadata.cache_hits}")

    table = Table(title="Findings by severity")
    table.add_column("Severity")
    table.add_column("Count", justify="right")
    known = [s for s in SEVERITIES if s in state.by_severity]
    others = sorted(s for s in state.by_severity if s not in SEVERITIES)
    for severity in known + others:
        table.add_row(severity, str(state.by_severity[severity]))
    if state.by_severity:
        console.print(table)

    if state.by_category:
        categories = Table(title="Findings by category")
        categories.add_column("Category")
        categories.add_column("Count", justify="right")
        for category, count in sorted(state.by_category.items()):
            categories.add_row(category, str(count))
        console.print(categories)

    if state.critical_units:
        console.print("[red]Units with critical findings:[/red]")
        for unit_id in state.critical_units:
            console.print(f"  - {escape(unit_id)}")


@app.command("analyze")
def analyze(
    bundle_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Graph bundle JSON produced by an extractor."),
    config_paths: List[Path] = typer.Option([], "--config", "-c", help="TOML config file(s), later files win."),
    overrides: List[str] = typer.Option([], "--set", help="Inline override, e.g. --set llm.model=gpt-4o."),
    resume: bool = typer.Option(False, "--resume", help="Continue from the existing checkpoint."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-j", min=1, help="Units analyzed in parallel per dependency layer."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Do not read or write the summary cache."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Checkpoint/report JSON path (overrides output.json)."),
    prompts_dir: Optional[Path] = typer.Option(None, "--prompts", exists=True, file_okay=False, help="Directory of <name>.txt files replacing builtin:<name> prompts."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
):
    """Analyze every unit of a call graph bundle."""
    setup_logging(verbose)
    load_dotenv()
    cfg = _load_config_or_exit(config_paths, overrides)
    checkpoint_path = output or Path(cfg.output.json)

    try:
        bundle = load_bundle(bundle_path)
        units = bundle.units()
    except GraphError as exc:
        console.print(f"[red]Graph error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)
    console.print(f"Found {len(bundle.functions)} function(s) in {len(units)} analysis unit(s)")

    state = None
    if resume:
        try:
            state = load_checkpoint(checkpoint_path)
        except StateError as exc:
            console.print(f"[red]Cannot resume:[/red] {escape(str(exc))}")
            raise typer.Exit(code=1)
        if state is None:
            console.print("No existing checkpoint found, starting fresh")
        else:
            console.print(f"Resuming with {len(state)} unit(s) already analyzed")
    if state is None:
        state = RunState(
            metadata=RunMetadata(
                inputs=[str(bundle_path)],
                config_file=", ".join(str(p) for p in config_paths),
            )
        )

    try:
        oracle = create_oracle(cfg.llm)
        scheduler = PipelineScheduler(
            cfg, oracle, cache=_open_cache(cfg, no_cache), graph=bundle.calls, externals=bundle.externals,
            prompts_dir=prompts_dir,
        )
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=2)

    severity_counts: Dict[str, int] = {}
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Analyzing", total=len(units), completed=len(state))

        def on_progress(event: ProgressEvent) -> None:
            if event.finding is not None:
                severity_counts[event.finding.severity] = severity_counts.get(event.finding.severity, 0) + 1
            if event.status in (UnitStatus.DONE, UnitStatus.CACHED):
                progress.advance(task)
            tally = " ".join(f"{s}:{severity_counts[s]}" for s in SEVERITIES if severity_counts.get(s))
            description = f"{event.unit_id} → {event.phase}"
            if tally:
                description += f" ({tally})"
            progress.update(task, description=escape(description))

        context = RunContext(
            accumulator=ResultAccumulator(state),
            checkpoint_path=checkpoint_path,
            on_progress=on_progress,
        )

        def request_cancel(signum, frame):
            if context.cancelled:
                raise KeyboardInterrupt
            console.print("\nCancelling after the current unit (press Ctrl-C again to abort)...")
            context.cancel()

        previous_handler = signal.signal(signal.SIGINT, request_cancel)
        try:
            scheduler.run(units, context, concurrency=concurrency)
        except RunCancelled as exc:
            console.print(f"[yellow]{escape(str(exc))}[/yellow]. Progress saved to {checkpoint_path}; run with --resume to continue.")
            raise typer.Exit(code=130)
        except (OracleError, GraphError) as exc:
            console.print(f"[red]Error:[/red] {escape(str(exc))}")
            console.print(f"Progress saved to {checkpoint_path}. Run with --resume to continue.")
            raise typer.Exit(code=1)
        finally:
            signal.signal(signal.SIGINT, previous_handler)
            scheduler.cache.close()

    _print_summary(state)
    console.print(f"Wrote {checkpoint_path}")


@app.command("units")
def list_units(
    bundle_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Graph bundle JSON."),
):
    """Show the analysis units in the order they would be processed."""
    try:
        units = load_bundle(bundle_path).units()
    except GraphError as exc:
        console.print(f"[red]Graph error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)

    table = Table(title=f"{len(units)} analysis unit(s)")
    table.add_column("#", justify="right")
    table.add_column("Unit")
    table.add_column("Members", justify="right")
    table.add_column("Depends on")
    for i, unit in enumerate(units, 1):
        table.add_row(str(i), escape(unit.id), str(len(unit.members)), escape(", ".join(unit.dependencies)) or "-")
    console.print(table)


@app.command("cache-clear")
def cache_clear(
    config_paths: List[Path] = typer.Option([], "--config", "-c", help="TOML config file(s)."),
):
    """Remove every entry from the summary cache."""
    cfg = _load_config_or_exit(config_paths, [])
    try:
        cache = SummaryCache(Path(cfg.cache.dir).expanduser())
        removed = cache.clear()
        cache.close()
    except CacheError as exc:
        console.print(f"[red]Cache error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)
    typer.echo(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}.")


@app.command("show-config")
def show_config(
    config_paths: List[Path] = typer.Option([], "--config", "-c", help="TOML config file(s)."),
    overrides: List[str] = typer.Option([], "--set", help="Inline override."),
):
    """Print the effective configuration."""
    cfg = _load_config_or_exit(config_paths, overrides)
    data = cfg.to_dict()
    if data["llm"].get("api_key"):
        data["llm"]["api_key"] = "***"
    for analysis in data["analyses"]:
        if analysis.get("llm", {}).get("api_key"):
            analysis["llm"]["api_key"] = "***"
    typer.echo(toml.dumps(data))

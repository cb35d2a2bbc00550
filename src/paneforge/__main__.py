"""CLI entry point for paneforge."""

import asyncio
from pathlib import Path
from typing import Annotated

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from paneforge import __version__
from paneforge.config import Config, display_config_warnings, load_config, save_config
from paneforge.description import load_layout
from paneforge.display import build_requests_table, build_snapshot_view
from paneforge.errors import DescriptionError, PaneforgeError
from paneforge.launcher import RecordingProcessLayer
from paneforge.pipeline import DryRunStepExecutor, StepExecutor
from paneforge.session import SessionState
from paneforge.telemetry import configure_logging
from paneforge.xdg_paths import ensure_directories, get_config_file_path, get_layouts_dir

app = typer.Typer(
    name="paneforge",
    help="Build terminal layouts from YAML descriptions and run their setup pipelines.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

LayoutArg = Annotated[str, typer.Argument(help="Layout file, or the name of a layout in the layouts directory.")]
ConfigOpt = Annotated[Path | None, typer.Option("--config", "-C", help="Config file path.")]
StrictOpt = Annotated[bool, typer.Option("--strict", help="Exit with error on config validation warnings.")]
ColsOpt = Annotated[int | None, typer.Option("--cols", min=1, help="Viewport width in cells.")]
RowsOpt = Annotated[int | None, typer.Option("--rows", min=1, help="Viewport height in cells.")]
VerboseOpt = Annotated[int, typer.Option("--verbose", "-v", count=True, help="Increase verbosity.")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"paneforge {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version."),
    ] = None,
) -> None:
    """Build terminal layouts from YAML descriptions and run their setup pipelines."""


def resolve_layout_path(layout: str) -> Path:
    """Find a layout file by path or by name in the layouts directory.

    Args:
        layout: A file path, or a bare name looked up as ``<layouts dir>/<name>.yaml``.

    Returns:
        Path to the layout file.

    Raises:
        DescriptionError: If neither exists.
    """
    path = Path(layout).expanduser()
    if path.is_file():
        return path
    for suffix in (".yaml", ".yml"):
        candidate = get_layouts_dir() / f"{layout}{suffix}"
        if candidate.is_file():
            return candidate
    raise DescriptionError(f"Layout not found: {layout}")


def _load_settings(
    config_path: Path | None,
    strict: bool,
    cols: int | None = None,
    rows: int | None = None,
    verbose: int = 0,
) -> Config:
    """Load config, apply CLI overrides and set up logging."""
    config, config_warnings = load_config(config_path, project_dir=Path.cwd(), strict=strict)
    if config_warnings:
        display_config_warnings(config_warnings, err_console)
        if strict:
            raise typer.Exit(1)

    # CLI takes precedence over config
    overrides: dict[str, int] = {}
    if cols is not None:
        overrides["viewport_cols"] = cols
    if rows is not None:
        overrides["viewport_rows"] = rows
    if overrides:
        config = config.model_copy(update=overrides)

    level = "DEBUG" if verbose > 1 else "INFO" if verbose == 1 else config.log_level.value
    configure_logging(level, err_console)
    return config


def _build_session(
    layout: str,
    config: Config,
    process_layer: RecordingProcessLayer | None = None,
    executor: StepExecutor | None = None,
) -> SessionState:
    """Load a layout and build its session, exiting with an error message on failure."""
    try:
        description = load_layout(resolve_layout_path(layout))
        return SessionState.build(description, config=config, process_layer=process_layer, executor=executor)
    except PaneforgeError as e:
        err_console.print(f"[red]Error:[/] {escape(str(e))}")
        raise typer.Exit(1) from None


@app.command()
def validate(
    layout: LayoutArg,
    config_path: ConfigOpt = None,
    strict: StrictOpt = False,
) -> None:
    """Check that a layout loads and builds."""
    config = _load_settings(config_path, strict)
    session = _build_session(layout, config)
    console.print(
        f"[green]✓[/] Layout is valid: {len(session.tabs)} tabs, {len(session.registry)} panes, "
        f"{len(session.pipelines)} pipelines"
    )


@app.command()
def show(
    layout: LayoutArg,
    cols: ColsOpt = None,
    rows: RowsOpt = None,
    config_path: ConfigOpt = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the session snapshot as JSON.")] = False,
) -> None:
    """Show the resolved pane tree of a layout without starting anything."""
    config = _load_settings(config_path, strict=False, cols=cols, rows=rows)
    session = _build_session(layout, config)
    snapshot = session.snapshot()
    if as_json:
        console.print_json(data=snapshot)
        return
    console.print(build_snapshot_view(snapshot))


async def _run_session(session: SessionState) -> None:
    session.start()
    await session.run_until_idle()


@app.command()
def run(
    layout: LayoutArg,
    dry_run: Annotated[bool, typer.Option("--dry-run", "-n", help="Pretend every pipeline step succeeds.")] = False,
    cols: ColsOpt = None,
    rows: RowsOpt = None,
    config_path: ConfigOpt = None,
    strict: StrictOpt = False,
    verbose: VerboseOpt = 0,
) -> None:
    """Start a layout, run its setup pipelines to completion and report the result."""
    config = _load_settings(config_path, strict, cols=cols, rows=rows, verbose=verbose)
    process_layer = RecordingProcessLayer()
    executor = DryRunStepExecutor() if dry_run else None
    session = _build_session(layout, config, process_layer=process_layer, executor=executor)

    asyncio.run(_run_session(session))

    console.print(build_requests_table(process_layer.requests))
    console.print(build_snapshot_view(session.snapshot()))

    if session.failures:
        for error in session.failures:
            err_console.print(f"[red]Pipeline failed:[/] {escape(str(error))}")
        raise typer.Exit(1)


@app.command("list")
def list_layouts() -> None:
    """List layouts in the layouts directory."""
    layouts_dir = get_layouts_dir()
    files = sorted([*layouts_dir.glob("*.yaml"), *layouts_dir.glob("*.yml")]) if layouts_dir.is_dir() else []
    if not files:
        console.print(f"[yellow]No layouts found in[/] {layouts_dir}")
        return

    table = Table(title="Available Layouts")
    table.add_column("Name", style="cyan")
    table.add_column("Path", style="dim")
    for path in files:
        table.add_row(path.stem, str(path))
    console.print(table)


@app.command()
def init_config(
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite an existing config file.")] = False,
) -> None:
    """Write the default settings to the user config file."""
    ensure_directories()
    target = get_config_file_path()
    if target.exists() and not force:
        err_console.print(f"[yellow]Config file already exists:[/] {target} (use --force to overwrite)")
        raise typer.Exit(1)

    save_config(Config(), target)
    console.print(f"[green]✓[/] Wrote default settings to {target}")


@app.command()
def dump_config(
    config_path: ConfigOpt = None,
    strict: StrictOpt = False,
) -> None:
    """Output the effective configuration."""
    config = _load_settings(config_path, strict)
    console.print(yaml.dump(config.model_dump(mode="json"), default_flow_style=False))


if __name__ == "__main__":
    app()

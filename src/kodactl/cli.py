"""Typer-powered command line interface for ``koda``.

Each lifecycle command runs inside a structured operation scope, shows a
Rich spinner while the orchestrator works, and turns fatal errors into a red
message plus a non-zero exit code from :class:`~kodactl.exit_codes.ExitCode`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .lifecycle import LifecycleOrchestrator, MissingDependencyError, NotInstalledError
from .logging import OperationScope, StructuredLogger
from .providers import (
    FetchError,
    InstallTreeError,
    PackageInstallError,
    Pm2Error,
    RemoveStatus,
    StopStatus,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to kodactl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

LIFECYCLE_ERRORS: tuple[type[Exception], ...] = (
    MissingDependencyError,
    NotInstalledError,
    FetchError,
    InstallTreeError,
    PackageInstallError,
    Pm2Error,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        CLI to manage koda-backend.

        Downloads the latest koda-backend source, installs its dependencies
        with pnpm and keeps it running under pm2.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the resolved kodactl configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    orchestrator: LifecycleOrchestrator


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    logger = StructuredLogger(config.logs_dir)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        orchestrator=LifecycleOrchestrator(config),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the kodactl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"kodactl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _target(config: AppConfig) -> dict[str, object]:
    return {"kind": "app", "name": config.app_name, "path": str(config.install_dir)}


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(exc, NotInstalledError):
        return ExitCode.VALIDATION
    if isinstance(exc, (MissingDependencyError, InstallTreeError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _lifecycle_error(op: OperationScope, summary: str, exc: Exception) -> NoReturn:
    """Report a fatal lifecycle failure and exit with the matching code."""
    rc = _exit_code_for(exc)
    if isinstance(exc, MissingDependencyError):
        console.print(f"[red]{escape(str(exc))}[/red]")
        console.print('[yellow]Please run "koda setup" first.[/yellow]')
        op.error(str(exc), errors=[f"missing:{name}" for name in exc.missing], rc=rc)
        raise typer.Exit(code=rc) from exc
    if isinstance(exc, NotInstalledError):
        _command_error(op, str(exc), rc=rc)
    _command_error(op, f"{summary}: {exc}", rc=rc, errors=[str(exc)])


@app.command()
def setup(ctx: typer.Context) -> None:
    """Install global dependencies (pnpm, pm2)."""
    runtime = _get_runtime(ctx)
    packages = " and ".join(runtime.config.setup.packages)
    with runtime.logger.operation("setup", target={"kind": "global"}) as op:
        with console.status(f"Installing {packages}...") as status:
            try:
                runtime.orchestrator.setup(op=op, progress=status.update)
            except PackageInstallError as exc:
                _command_error(
                    op,
                    f"Failed to install dependencies: {exc}",
                    rc=ExitCode.PROVIDER,
                    errors=[str(exc)],
                )
        console.print(f"[green]Dependencies ({packages}) installed successfully![/green]")
        op.success("Global dependencies installed.", changed=1)


@app.command()
def install(ctx: typer.Context) -> None:
    """Install koda-backend."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("install", target=_target(config)) as op:
        with console.status("Initializing installation...") as status:
            try:
                result = runtime.orchestrator.install(op=op, progress=status.update)
            except LIFECYCLE_ERRORS as exc:
                _lifecycle_error(op, f"Failed to install {config.app_name}", exc)
        location = escape(str(result.path))
        console.print(f"[green]{config.app_name} installed successfully in {location}[/green]")
        op.success(
            "Application installed.",
            changed=1,
            context={"entries": result.entries, "replaced_existing": result.replaced_existing},
        )


@app.command()
def start(ctx: typer.Context) -> None:
    """Start koda-backend using pm2."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("start", target=_target(config)) as op:
        with console.status(f"Starting {config.app_name}...") as status:
            try:
                result = runtime.orchestrator.start(op=op, progress=status.update)
            except LIFECYCLE_ERRORS as exc:
                _lifecycle_error(op, f"Failed to start {config.app_name}", exc)
        console.print(f"[green]{config.app_name} started successfully![/green]")
        if result.removed.status is RemoveStatus.FAILED:
            op.warning(
                "Application started; stale pm2 entry could not be removed.",
                warnings=[f"pm2 delete failed: {result.removed.reason}"],
                changed=1,
            )
            return
        op.success("Application started.", changed=1)


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop koda-backend using pm2."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("stop", target=_target(config)) as op:
        with console.status(f"Stopping {config.app_name}...") as status:
            try:
                outcome = runtime.orchestrator.stop(op=op, progress=status.update)
            except LIFECYCLE_ERRORS as exc:
                _lifecycle_error(op, f"Failed to stop {config.app_name}", exc)
        if outcome.status is StopStatus.STOPPED:
            console.print(f"[green]{config.app_name} stopped successfully![/green]")
            op.success("Application stopped.", changed=1)
        elif outcome.status is StopStatus.WAS_NOT_RUNNING:
            console.print(f"[yellow]{config.app_name} was not running.[/yellow]")
            op.success("Application was not running.", changed=0)
        else:
            console.print(
                f"[yellow]Failed to stop {config.app_name} (it might not be running)[/yellow]"
            )
            op.warning(
                "pm2 stop failed.",
                warnings=[outcome.reason or "unknown"],
                changed=0,
            )


@app.command()
def update(ctx: typer.Context) -> None:
    """Update koda-backend."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("update", target=_target(config)) as op:
        with console.status(f"Updating {config.app_name}...") as status:
            try:
                result = runtime.orchestrator.update(op=op, progress=status.update)
            except LIFECYCLE_ERRORS as exc:
                _lifecycle_error(op, f"Failed to update {config.app_name}", exc)
        console.print(
            f"[green]{config.app_name} updated and restarted successfully![/green]"
        )
        context = {"env_preserved": result.env_preserved}
        warnings = result.warnings
        if warnings:
            for warning in warnings:
                console.print(f"[yellow]{escape(warning)}[/yellow]")
            op.warning(
                "Application updated with warnings.",
                warnings=warnings,
                changed=1,
                context=context,
            )
            return
        op.success("Application updated.", changed=1, context=context)


@app.command()
def uninstall(ctx: typer.Context) -> None:
    """Permanently remove koda-backend."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("uninstall", target=_target(config)) as op:
        with console.status(f"Uninstalling {config.app_name}...") as status:
            try:
                result = runtime.orchestrator.uninstall(op=op, progress=status.update)
            except LIFECYCLE_ERRORS as exc:
                _lifecycle_error(op, f"Failed to uninstall {config.app_name}", exc)
        console.print(f"[green]{config.app_name} uninstalled successfully![/green]")
        context = {"files_removed": result.files_removed}
        if result.removed.status is RemoveStatus.FAILED:
            op.warning(
                "Application files removed; pm2 entry could not be deleted.",
                warnings=[f"pm2 delete failed: {result.removed.reason}"],
                changed=1,
                context=context,
            )
            return
        op.success("Application uninstalled.", changed=1, context=context)


@app.command()
def clear(ctx: typer.Context) -> None:
    """Clear all files and folders inside the koda-backend outputs directory."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("clear", target=_target(config)) as op:
        with console.status("Clearing outputs directory...") as status:
            try:
                result = runtime.orchestrator.clear_outputs(op=op, progress=status.update)
            except InstallTreeError as exc:
                _lifecycle_error(op, "Failed to clear outputs directory", exc)
        if not result.existed:
            console.print(
                "[yellow]Outputs directory does not exist, nothing to clear.[/yellow]"
            )
            op.success("Outputs directory missing; nothing to clear.", changed=0)
            return
        console.print("[green]Outputs directory cleared successfully![/green]")
        op.success(
            "Outputs directory cleared.",
            changed=1 if result.removed else 0,
            context={"removed": result.removed},
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the resolved configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        payload = runtime.config.to_dict()
        if json_output:
            console.print(
                json.dumps(payload, indent=2, sort_keys=True),
                markup=False,
                highlight=False,
                soft_wrap=True,
            )
        else:
            table = Table(title="kodactl configuration")
            table.add_column("Key", style="bold")
            table.add_column("Value", overflow="fold")
            for key, value in _flatten(payload):
                table.add_row(key, value)
            console.print(table)
        op.success("Rendered configuration.", changed=0)


def _flatten(payload: dict[str, object], prefix: str = "") -> list[tuple[str, str]]:
    rows: list[tuple[str, str]] = []
    for key, value in payload.items():
        label = f"{prefix}{key}"
        if isinstance(value, dict):
            rows.extend(_flatten(value, prefix=f"{label}."))
        elif isinstance(value, list):
            rows.append((label, " ".join(str(item) for item in value)))
        else:
            rows.append((label, str(value)))
    return rows


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]

"""Typer-powered command line interface for ``kubeseed``.

``kubeseed up`` drives the host through every provisioning concern and is safe
to re-run; ``status`` inspects the same concerns read-only; ``reset`` tears the
control plane back down and is never triggered implicitly.
"""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import AppConfig, load_config
from .errors import (
    ApplyError,
    ConfigurationError,
    InitializationInconsistencyError,
    KubeseedError,
    ReadinessCancelledError,
    ReadinessTimeoutError,
    ResetError,
    RunCancelledError,
)
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .provision.engine import Orchestrator, create_provision_context
from .provision.initializer import mint_token
from .provision.models import (
    Concern,
    ConcernState,
    ProvisionContext,
    RunReport,
    Status,
    StepAction,
    StepRecord,
)
from .provision.probes import probe, probe_all
from .providers.kubeadm import KubeadmError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to kubeseed's YAML config file.",
)

TARGET_OPTION = typer.Option(
    None,
    "--target",
    help="Host to provision. Only the local host ('localhost') is supported.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

_ACTION_STYLE: Mapping[StepAction, str] = {
    StepAction.SKIPPED: "[dim]skipped[/dim]",
    StepAction.APPLIED: "[green]applied[/green]",
    StepAction.FAILED: "[red]failed[/red]",
    StepAction.PLANNED: "[cyan]planned[/cyan]",
}

_STATUS_STYLE: Mapping[Status, str] = {
    Status.SATISFIED: "[green]satisfied[/green]",
    Status.UNSATISFIED: "[yellow]unsatisfied[/yellow]",
    Status.FAILED: "[red]failed[/red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Idempotent single-node Kubernetes control-plane bootstrapper.

        Every run inspects the live host and only acts on what is missing, so
        'kubeseed up' can be repeated after a failure to resume where it stopped.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    provision: ProvisionContext


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    target: str | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if target is not None:
        overrides["target"] = target

    try:
        config = load_config(config_file=config_file, overrides=overrides, require_complete=False)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    logger = StructuredLogger(config.paths.logs_dir)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        provision=create_provision_context(config),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the kubeseed version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    target: str | None = TARGET_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log provider commands and probe details to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        console.print(f"kubeseed {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, target)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.CONFIG),
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _target(runtime: RuntimeContext) -> dict[str, object]:
    return {"kind": "host", "host": runtime.config.target, "node": runtime.config.node_name}


def _render_record(record: StepRecord) -> None:
    label = _ACTION_STYLE[record.action]
    line = f"{label} {record.concern.value}"
    if record.detail:
        line += f": {record.detail}"
    console.print(line)


def _render_states(states: Sequence[ConcernState]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Concern", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for state in states:
        status = _STATUS_STYLE[state.status]
        if state.inconsistent:
            status += " [red](reset required)[/red]"
        table.add_row(state.concern.value, status, state.reason)
    console.print(table)


def _render_plan(report: RunReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Concern", style="bold")
    table.add_column("Ordering")
    for index, record in enumerate(report.records, start=1):
        table.add_row(str(index), record.concern.value, record.detail)
    console.print(table)


def _remediation(exc: KubeseedError) -> str | None:
    if isinstance(exc, InitializationInconsistencyError):
        return "Run 'kubeseed reset' to clear the partial control plane, then 'kubeseed up'."
    if isinstance(exc, ReadinessTimeoutError):
        return (
            "The control plane and pod network were left in place; "
            "rerun 'kubeseed up' to keep waiting."
        )
    if isinstance(exc, ConfigurationError):
        return None
    if isinstance(exc, RunCancelledError):
        return "Rerun 'kubeseed up' to continue; completed concerns are skipped."
    return "Fix the reported problem and rerun 'kubeseed up'; completed concerns are skipped."


@app.command()
def up(
    ctx: typer.Context,
    syntax_check: bool = typer.Option(
        False,
        "--syntax-check",
        help="Validate configuration and concern ordering without touching the host.",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        min=1.0,
        help="Seconds to wait for the node to report Ready (default: readiness.timeout).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision the control plane, resuming from whatever is already in place."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "up",
        args={"syntax_check": syntax_check, "timeout": timeout, "json": json_output},
        target=_target(runtime),
        persist=not syntax_check,
    ) as op:

        def _on_record(record: StepRecord) -> None:
            op.add_step(record.concern.value, status=record.action.value, detail=record.detail)
            if not json_output:
                _render_record(record)

        orchestrator = Orchestrator(runtime.provision, on_record=_on_record)

        if syntax_check:
            try:
                report = orchestrator.plan()
            except KubeseedError as exc:
                _command_error(op, str(exc), rc=int(exc.exit_code), context=exc.to_dict())
            if json_output:
                console.print_json(data=report.to_dict())
            else:
                _render_plan(report)
                console.print("[green]Syntax check passed; no changes were made.[/green]")
            op.success("Syntax check passed.", context={"report": report.to_dict()})
            return

        try:
            report = orchestrator.run(timeout=timeout)
        except KeyboardInterrupt:
            runtime.provision.cancel_event.set()
            error = _interrupted(orchestrator.current_concern)
            _fail_run(op, orchestrator, error, json_output=json_output)
        except KubeseedError as exc:
            _fail_run(op, orchestrator, exc, json_output=json_output)

        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            if report.token is not None:
                console.print("[green]Control plane is ready.[/green] Join workers with:")
                console.print(f"  {report.token.join_command()}", soft_wrap=True)
            else:
                console.print("[green]Control plane is ready.[/green]")
                console.print("Run 'kubeseed join-command' to mint a worker join command.")
        op.success(
            "Provisioning complete.",
            changed=len(report.applied),
            context={"applied": [c.value for c in report.applied]},
        )


def _interrupted(concern: Concern | None) -> KubeseedError:
    if concern is Concern.NODE_READY:
        return ReadinessCancelledError("interrupted by operator", concern=concern)
    return RunCancelledError("interrupted by operator", concern=concern)


def _fail_run(
    op: OperationScope,
    orchestrator: Orchestrator,
    exc: KubeseedError,
    *,
    json_output: bool,
) -> NoReturn:
    report = orchestrator.last_report
    payload: dict[str, object] = {
        "report": report.to_dict() if report is not None else None,
        "error": exc.to_dict(),
    }
    rc = int(exc.exit_code)
    if json_output:
        console.print_json(data=payload)
        op.error(str(exc), rc=rc, context={"error": exc.to_dict()})
        raise typer.Exit(code=rc)
    hint = _remediation(exc)
    if hint:
        console.print(f"[yellow]{hint}[/yellow]")
    _command_error(op, str(exc), rc=rc, context={"error": exc.to_dict()})


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Inspect every provisioning concern without changing anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target=_target(runtime),
    ) as op:
        states = probe_all(runtime.provision)
        payload = {"concerns": [state.to_dict() for state in states]}
        if json_output:
            console.print_json(data=payload)
        else:
            _render_states(states)

        failed = [state for state in states if state.is_failed]
        if not failed:
            unsatisfied = [s.concern.value for s in states if not s.is_satisfied]
            if unsatisfied:
                op.warning(
                    "Some concerns are not yet satisfied.",
                    warnings=unsatisfied,
                    context=payload,
                )
            else:
                op.success("All concerns satisfied.", context=payload)
            return

        rc = (
            ExitCode.INCONSISTENT
            if any(state.inconsistent for state in failed)
            else ExitCode.PROBE
        )
        op.error(
            "Some concerns could not be inspected.",
            errors=[f"{state.concern.value}: {state.reason}" for state in failed],
            rc=int(rc),
            context=payload,
        )
        raise typer.Exit(code=int(rc))


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not prompt for confirmation.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Tear down the control plane and undo every host change kubeseed made."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "reset",
        args={"yes": yes, "json": json_output},
        target=_target(runtime),
    ) as op:
        if not yes:
            confirmed = typer.confirm(
                "This removes the cluster, its data, the Kubernetes packages and the "
                "container runtime from this host. Continue?",
                default=False,
            )
            if not confirmed:
                console.print("[yellow]Reset cancelled.[/yellow]")
                op.warning("Reset cancelled by operator.", warnings=["user-cancelled"])
                return

        orchestrator = Orchestrator(runtime.provision)
        try:
            report = orchestrator.reset()
        except ResetError as exc:
            if json_output:
                console.print_json(data=exc.to_dict())
            else:
                for action, reason in exc.failures:
                    console.print(f"[red]failed[/red] {action}: {reason}")
            _command_error(op, str(exc), rc=int(exc.exit_code), context=exc.to_dict())

        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            for item in report.actions:
                console.print(f"[green]ok[/green] {item.action}: {item.detail}")
            console.print("[green]Host reset complete.[/green]")
        op.success("Host reset complete.", changed=len(report.actions), context=payload)


@app.command("join-command")
def join_command(ctx: typer.Context) -> None:
    """Mint a fresh bootstrap token and print the worker join command."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "join-command",
        target=_target(runtime),
    ) as op:
        concern = Concern.CONTROL_PLANE_INITIALIZED
        state = probe(concern, runtime.provision)
        if not state.is_satisfied:
            rc = ExitCode.INCONSISTENT if state.inconsistent else ExitCode.APPLY
            _command_error(
                op,
                f"Control plane is not initialised ({state.reason}); run 'kubeseed up' first.",
                rc=int(rc),
            )
        try:
            token = mint_token(runtime.provision)
        except KubeadmError as exc:
            error = ApplyError(str(exc), concern=concern)
            _command_error(op, str(error), rc=int(error.exit_code))
        except (OSError, ValueError) as exc:
            error = ApplyError(f"unable to read the cluster CA: {exc}", concern=concern)
            _command_error(op, str(error), rc=int(error.exit_code))
        console.print(token.join_command(), soft_wrap=True)
        op.success("Minted bootstrap token.", changed=1)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        missing = runtime.config.missing_required()
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = "\n".join(f"{k}: {v}" for k, v in value.items())
            else:
                rendered = str(value) if value != "" else "[red]<unset>[/red]"
            table.add_row(key, rendered)

        console.print(table)
        if missing:
            console.print(f"[yellow]Missing required options: {', '.join(missing)}[/yellow]")
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]

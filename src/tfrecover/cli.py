"""tfrecover command line interface.

Usage:
    tfrecover plan  --state-store PATH|azurerm://... --declarations DIR|FILE
    tfrecover apply --state-store ... --declarations ... [--auto-approve] [--max-attempts N]
    tfrecover state list   --state-store ... --declarations ...
    tfrecover state import --state-store ... --declarations ... ADDRESS EXTERNAL_ID
    tfrecover state remove --state-store ... --declarations ... ADDRESS

Exit codes:
    0 success
    1 general failure
    2 invalid input or address not found
    3 retries exhausted
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from .analyzer import PlanAnalyzer, render_report, report_to_dict
from .config import Config, ConfigurationError
from .context import Context
from .declarations import Declarations, load_declarations
from .engine import ConcurrencyError, EngineError, InfrastructureEngine
from .main import setup_logging
from .models import (
    EXIT_CODE_MEANINGS,
    EXIT_FAILURE,
    EXIT_INVALID_INPUT,
    ApplyOutcome,
    ApplyResult,
    InputError,
    PlanReport,
    PlanStatus,
    ResourceAddress,
    StateStoreRef,
)
from .recovery import RecoveryEngine
from .security import SecretlessViolationError
from .state import StateOperationResult, StateOperationStatus, StateSurgeon
from .terraform import TerraformEngine

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@dataclass
class Runtime:
    """Everything a command needs, resolved once at the CLI edge."""

    config: Config
    context: Context
    engine: InfrastructureEngine
    declarations: Declarations
    store: StateStoreRef


def load_runtime(state_store: str, declarations_path: Path) -> Runtime:
    config = Config.from_env()
    context = Context.from_env()
    return Runtime(
        config=config,
        context=context,
        engine=TerraformEngine(config),
        declarations=load_declarations(declarations_path),
        store=StateStoreRef.parse(state_store),
    )


@contextmanager
def exit_on_error() -> Iterator[None]:
    """Translate toolkit exceptions into messages and exit codes."""
    try:
        yield
    except (InputError, ConfigurationError) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_INVALID_INPUT)
    except SecretlessViolationError as e:
        click.secho(f"Security violation: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILURE)
    except ConcurrencyError as e:
        click.secho(f"State store busy: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILURE)
    except EngineError as e:
        click.secho(f"Engine error: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILURE)


def store_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """--state-store and --declarations, shared by every command."""
    func = click.option(
        "--declarations",
        "declarations_path",
        required=True,
        type=click.Path(exists=True, path_type=Path),
        help="Terraform module directory or declarations YAML file.",
    )(func)
    func = click.option(
        "--state-store",
        required=True,
        help="Local state file path or azurerm://<sub>/<rg>/<account>/<container>/<key>.",
    )(func)
    return func


@contextmanager
def cancel_on_signal() -> Iterator[threading.Event]:
    """Set an event on SIGINT/SIGTERM for the duration of the block.

    The running terraform process is not interrupted; the event only stops
    the next attempt from starting.
    """
    cancel = threading.Event()

    def signal_handler(signum: int, _frame: Any) -> None:
        logger.info("Received signal", extra={"signal": signal.Signals(signum).name})
        click.secho("Cancellation requested, finishing current attempt...", fg="yellow", err=True)
        cancel.set()

    previous = {}
    in_main_thread = threading.current_thread() is threading.main_thread()
    if in_main_thread:
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, signal_handler)
    try:
        yield cancel
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="tfrecover")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Terraform apply with automatic error recovery and state surgery."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)


# =============================================================================
# Plan
# =============================================================================


@cli.command()
@store_options
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
@click.option(
    "--destructive-pattern",
    "destructive_patterns",
    multiple=True,
    help="Resource type regex flagged when replaced or deleted (repeatable).",
)
def plan(
    state_store: str,
    declarations_path: Path,
    output_format: str,
    destructive_patterns: tuple[str, ...],
) -> None:
    """Dry-run plan with destructive change detection."""
    with exit_on_error():
        runtime = load_runtime(state_store, declarations_path)
        analyzer = PlanAnalyzer(
            runtime.engine,
            runtime.context,
            runtime.config.destructive_resource_patterns,
        )
        report = analyzer.analyze(
            runtime.declarations,
            runtime.store,
            destructive_patterns or None,
        )

    if output_format == "json":
        click.echo(json.dumps(report_to_dict(report), indent=2))
    else:
        click.echo(render_report(report))

    if report.status is PlanStatus.FAILED:
        sys.exit(EXIT_FAILURE)


# =============================================================================
# Apply
# =============================================================================


def confirm_plan(report: PlanReport) -> bool:
    """Show the plan and ask whether to apply it."""
    click.echo(render_report(report))
    if report.has_high_risk:
        click.secho(
            f"{len(report.high_risk_entries)} high-risk change(s) listed above.",
            fg="red",
            bold=True,
        )
    return click.confirm("Apply these changes?", default=False)


def print_failure(result: ApplyResult) -> None:
    """Unrecovered errors, then every remediation, then the exit code meaning."""
    click.secho("Unrecovered errors:", fg="red", bold=True)
    if not result.unrecovered_errors:
        click.echo("  (none)")
    for error in result.unrecovered_errors:
        click.echo(f"  {error.summary()}")
        if error.detail:
            for line in error.detail.splitlines():
                click.echo(f"      {line}")

    click.secho("Remediations:", bold=True)
    if not result.remediations:
        click.echo("  (none)")
    for record in result.records:
        for action in record.actions:
            click.echo(f"  attempt {record.attempt}: {action.summary()}")

    code = result.exit_code
    click.echo(f"Exit code {code}: {EXIT_CODE_MEANINGS[code]} ({result.outcome.value})")


@cli.command()
@store_options
@click.option("--max-attempts", type=click.IntRange(min=1), default=None, help="Default: 5.")
@click.option("--auto-approve", is_flag=True, help="Apply without reviewing the plan.")
@click.option("--parallelism", type=click.IntRange(min=1), default=None, help="Default: 10.")
@click.option(
    "--fail-fast/--no-fail-fast",
    default=None,
    help="Stop at the first unrecoverable error instead of finishing other remediations.",
)
def apply(
    state_store: str,
    declarations_path: Path,
    max_attempts: int | None,
    auto_approve: bool,
    parallelism: int | None,
    fail_fast: bool | None,
) -> None:
    """Apply with automatic import/remove/retry recovery."""
    with exit_on_error():
        runtime = load_runtime(state_store, declarations_path)
        recovery = RecoveryEngine(runtime.engine, runtime.context, runtime.config)
        with cancel_on_signal() as cancel:
            result = recovery.apply_with_recovery(
                runtime.declarations,
                runtime.store,
                max_attempts=max_attempts,
                auto_approve=auto_approve,
                parallelism=parallelism,
                fail_fast=fail_fast,
                cancel_event=cancel,
                approver=None if auto_approve else confirm_plan,
            )

    if result.pending_verification:
        click.secho(
            "State changes not yet verified by an apply: "
            + ", ".join(sorted(str(a) for a in result.pending_verification)),
            fg="yellow",
            err=True,
        )

    if result.success:
        click.secho(f"Apply succeeded after {result.attempts} attempt(s).", fg="green")
        for record in result.records:
            for action in record.actions:
                click.echo(f"  attempt {record.attempt}: {action.summary()}")
        return

    if result.outcome is ApplyOutcome.DECLINED:
        click.echo("Apply declined.")
    else:
        print_failure(result)
    sys.exit(result.exit_code)


# =============================================================================
# State surgery
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect and edit the state store directly."""
    pass


def _surgeon(state_store: str, declarations_path: Path) -> StateSurgeon:
    runtime = load_runtime(state_store, declarations_path)
    return StateSurgeon(runtime.engine, runtime.context, runtime.declarations, runtime.store)


def _report_mutation(result: StateOperationResult) -> None:
    if result.status is StateOperationStatus.OK:
        click.secho(f"{result.address}: done", fg="green")
        click.echo("Run plan or apply to verify the change.", err=True)
        return
    if result.ok:
        click.echo(f"{result.address}: {result.message or result.status.value}")
        return

    click.secho(f"{result.address}: {result.status.value}: {result.message}", fg="red", err=True)
    if result.status is StateOperationStatus.FAILED:
        sys.exit(EXIT_FAILURE)
    sys.exit(EXIT_INVALID_INPUT)


@state.command("list")
@store_options
def state_list(state_store: str, declarations_path: Path) -> None:
    """List every resource address in the state store."""
    with exit_on_error():
        surgeon = _surgeon(state_store, declarations_path)
        for address in surgeon.list():
            click.echo(str(address))


@state.command("import")
@store_options
@click.argument("address")
@click.argument("external_id")
def state_import(
    state_store: str, declarations_path: Path, address: str, external_id: str
) -> None:
    """Bind an existing resource EXTERNAL_ID to ADDRESS."""
    with exit_on_error():
        parsed = ResourceAddress.parse(address)
        surgeon = _surgeon(state_store, declarations_path)
        result = surgeon.import_resource(parsed, external_id)
    _report_mutation(result)


@state.command("remove")
@store_options
@click.argument("address")
def state_remove(state_store: str, declarations_path: Path, address: str) -> None:
    """Remove ADDRESS from state, leaving the real resource untouched."""
    with exit_on_error():
        parsed = ResourceAddress.parse(address)
        surgeon = _surgeon(state_store, declarations_path)
        result = surgeon.remove(parsed)
    _report_mutation(result)

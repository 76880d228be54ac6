"""Terraform CLI implementation of the InfrastructureEngine.

Every operation shells out to the terraform binary with an explicit
environment built from the Context. The working directory is initialised
once per (module directory, state store) pair.

Local state stores are addressed with -state=<path>. Remote azurerm stores
are configured at init time with -backend-config.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Any

from .azure_resources import AzureResourceLocator
from .config import MAX_APPLY_OUTPUT_EVENTS, Config
from .context import Context
from .declarations import Declarations
from .engine import (
    ApplyOutput,
    CommandResult,
    ConcurrencyError,
    EngineError,
    InfrastructureEngine,
    PlanOutput,
)
from .models import StateStoreRef
from .security import get_managed_identity_credential

logger = logging.getLogger(__name__)

LOCK_ERROR_MARKER = "Error acquiring the state lock"
NO_STATE_MARKERS = ("No state file was found", "No state found")

INIT_TIMEOUT_SECONDS = 600
STATE_COMMAND_TIMEOUT_SECONDS = 120


class TerraformEngine(InfrastructureEngine):
    """Runs Terraform commands as subprocesses."""

    def __init__(self, config: Config, locator: AzureResourceLocator | None = None) -> None:
        self._config = config
        self._locator = locator
        self._initialized: set[tuple[str, str]] = set()

    # -------------------------------------------------------------------------
    # Process plumbing
    # -------------------------------------------------------------------------

    def _run(
        self,
        ctx: Context,
        args: list[str],
        *,
        cwd: Path,
        timeout: int,
    ) -> CommandResult:
        cmd = [self._config.terraform_bin, *args]
        logger.debug(
            "Running terraform",
            extra={"subcommand": " ".join(args[:2]), "cwd": str(cwd), "timeout": timeout},
        )
        try:
            completed = subprocess.run(
                cmd,
                cwd=cwd,
                env=ctx.terraform_environment(),
                timeout=timeout,
                capture_output=True,
                text=True,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise EngineError(f"terraform {args[0]} timed out after {timeout}s") from e
        except FileNotFoundError as e:
            raise EngineError(f"Terraform executable not found: {cmd[0]}") from e

        result = CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if not result.ok and (
            LOCK_ERROR_MARKER in result.stderr or LOCK_ERROR_MARKER in result.stdout
        ):
            raise ConcurrencyError(
                f"State store is locked by another operation: {result.diagnostics}"
            )
        return result

    @staticmethod
    def _state_args(store: StateStoreRef) -> list[str]:
        if store.is_remote:
            return []
        return [f"-state={store.local_path.resolve()}"]

    def _ensure_initialized(
        self, ctx: Context, declarations: Declarations, store: StateStoreRef
    ) -> Path:
        working_dir = declarations.working_dir.resolve()
        key = (str(working_dir), store.raw)
        if key in self._initialized:
            return working_dir

        args = ["init", "-input=false", "-no-color"]
        if store.is_remote:
            args.append("-reconfigure")
            args.extend(
                f"-backend-config={name}={value}"
                for name, value in store.backend_config().items()
            )
            args.append("-backend-config=use_msi=true")

        result = self._run(ctx, args, cwd=working_dir, timeout=INIT_TIMEOUT_SECONDS)
        if not result.ok:
            raise EngineError(f"terraform init failed: {result.diagnostics}")

        logger.info(
            "Terraform working directory initialised",
            extra={"working_dir": str(working_dir), "state_store": store.raw},
        )
        self._initialized.add(key)
        return working_dir

    # -------------------------------------------------------------------------
    # Plan / apply
    # -------------------------------------------------------------------------

    def plan(
        self, ctx: Context, declarations: Declarations, store: StateStoreRef
    ) -> PlanOutput:
        working_dir = self._ensure_initialized(ctx, declarations, store)

        with tempfile.TemporaryDirectory(prefix="tfrecover-plan-") as tmp:
            plan_file = Path(tmp) / "tfplan"
            args = [
                "plan",
                "-input=false",
                "-no-color",
                "-lock=false",
                "-detailed-exitcode",
                f"-out={plan_file}",
                *self._state_args(store),
                *declarations.var_arguments(),
            ]
            result = self._run(
                ctx, args, cwd=working_dir, timeout=self._config.plan_timeout_seconds
            )
            if result.exit_code not in (0, 2):
                return PlanOutput(exit_code=result.exit_code, raw_diagnostics=result.diagnostics)

            show = self._run(
                ctx,
                ["show", "-json", "-no-color", str(plan_file)],
                cwd=working_dir,
                timeout=self._config.plan_timeout_seconds,
            )
            if not show.ok:
                raise EngineError(f"terraform show failed: {show.diagnostics}")

        try:
            plan_json = json.loads(show.stdout)
        except json.JSONDecodeError as e:
            raise EngineError(f"Unparsable plan JSON: {e}") from e

        return PlanOutput(
            exit_code=result.exit_code,
            plan_json=plan_json,
            raw_diagnostics=result.stderr.strip(),
        )

    def apply(
        self,
        ctx: Context,
        declarations: Declarations,
        store: StateStoreRef,
        *,
        parallelism: int,
        auto_approve: bool,
    ) -> ApplyOutput:
        if not auto_approve:
            # -input=false apply cannot prompt; approval happens before this call
            raise EngineError("Non-interactive apply requires auto_approve")

        working_dir = self._ensure_initialized(ctx, declarations, store)
        args = [
            "apply",
            "-json",
            "-input=false",
            "-no-color",
            "-compact-warnings",
            f"-parallelism={parallelism}",
            "-auto-approve",
            *self._state_args(store),
            *declarations.var_arguments(),
        ]
        result = self._run(ctx, args, cwd=working_dir, timeout=self._config.apply_timeout_seconds)
        events = parse_json_lines(result.stdout)

        logger.info(
            "Terraform apply finished",
            extra={"exit_code": result.exit_code, "event_count": len(events)},
        )
        return ApplyOutput(
            exit_code=result.exit_code,
            events=tuple(events),
            raw_diagnostics=result.stderr.strip(),
        )

    # -------------------------------------------------------------------------
    # State operations
    # -------------------------------------------------------------------------

    def state_list(
        self, ctx: Context, declarations: Declarations, store: StateStoreRef
    ) -> list[str]:
        if not store.is_remote and not store.local_path.exists():
            return []
        working_dir = self._ensure_initialized(ctx, declarations, store)
        result = self._run(
            ctx,
            ["state", "list", *self._state_args(store)],
            cwd=working_dir,
            timeout=STATE_COMMAND_TIMEOUT_SECONDS,
        )
        if not result.ok:
            if any(marker in result.diagnostics for marker in NO_STATE_MARKERS):
                return []
            raise EngineError(f"terraform state list failed: {result.diagnostics}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def state_remove(
        self, ctx: Context, declarations: Declarations, store: StateStoreRef, address: str
    ) -> CommandResult:
        working_dir = self._ensure_initialized(ctx, declarations, store)
        return self._run(
            ctx,
            ["state", "rm", *self._state_args(store), address],
            cwd=working_dir,
            timeout=STATE_COMMAND_TIMEOUT_SECONDS,
        )

    def state_import(
        self,
        ctx: Context,
        declarations: Declarations,
        store: StateStoreRef,
        address: str,
        external_id: str,
    ) -> CommandResult:
        working_dir = self._ensure_initialized(ctx, declarations, store)
        args = [
            "import",
            "-input=false",
            "-no-color",
            *self._state_args(store),
            *declarations.var_arguments(for_import=True),
            address,
            external_id,
        ]
        return self._run(ctx, args, cwd=working_dir, timeout=self._config.import_timeout_seconds)

    def resource_exists(self, ctx: Context, external_id: str) -> bool:
        if self._locator is None:
            self._locator = AzureResourceLocator(
                get_managed_identity_credential(ctx.client_id, ctx.terraform_environment())
            )
        return self._locator.exists(external_id)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def snapshot_state(
        self, ctx: Context, declarations: Declarations, store: StateStoreRef
    ) -> bytes | None:
        if not store.is_remote:
            path = store.local_path
            return path.read_bytes() if path.exists() else None

        working_dir = self._ensure_initialized(ctx, declarations, store)
        result = self._run(
            ctx, ["state", "pull"], cwd=working_dir, timeout=STATE_COMMAND_TIMEOUT_SECONDS
        )
        if not result.ok:
            raise EngineError(f"terraform state pull failed: {result.diagnostics}")
        content = result.stdout.strip()
        return content.encode("utf-8") if content else None

    def restore_state(
        self,
        ctx: Context,
        declarations: Declarations,
        store: StateStoreRef,
        snapshot: bytes | None,
    ) -> None:
        if not store.is_remote:
            _restore_local_state(store.local_path, snapshot)
            return

        if snapshot is None:
            # An empty remote state cannot be pushed back; nothing was there before
            logger.warning(
                "No remote state snapshot to restore", extra={"state_store": store.raw}
            )
            return

        working_dir = self._ensure_initialized(ctx, declarations, store)
        with tempfile.TemporaryDirectory(prefix="tfrecover-state-") as tmp:
            snapshot_file = Path(tmp) / "restore.tfstate"
            snapshot_file.write_bytes(snapshot)
            result = self._run(
                ctx,
                ["state", "push", "-force", str(snapshot_file)],
                cwd=working_dir,
                timeout=STATE_COMMAND_TIMEOUT_SECONDS,
            )
        if not result.ok:
            raise EngineError(f"terraform state push failed: {result.diagnostics}")
        logger.info("Remote state restored from snapshot", extra={"state_store": store.raw})


def _restore_local_state(path: Path, snapshot: bytes | None) -> None:
    if snapshot is None:
        path.unlink(missing_ok=True)
        return
    # Write next to the target and rename so the file is never half-written
    fd, tmp_name = tempfile.mkstemp(prefix=".tfrecover-", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(snapshot)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Local state restored from snapshot", extra={"state_path": str(path)})


def parse_json_lines(output: str) -> list[dict[str, Any]]:
    """Parse a `-json` event stream, skipping lines that are not JSON objects.

    Past MAX_APPLY_OUTPUT_EVENTS only error events are kept, since Terraform
    writes its diagnostics at the end of the stream.
    """
    events: list[dict[str, Any]] = []
    truncated = 0
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping unparsable event line", extra={"line": line[:200]})
            continue
        if not isinstance(event, dict):
            continue
        if len(events) >= MAX_APPLY_OUTPUT_EVENTS and event.get("@level") != "error":
            truncated += 1
            continue
        events.append(event)
    if truncated:
        logger.warning(
            "Apply event stream truncated",
            extra={"max_events": MAX_APPLY_OUTPUT_EVENTS, "dropped_events": truncated},
        )
    return events

"""Declarative infrastructure engine interface.

The plan analyzer, the recovery engine and the state surgeon never run
Terraform themselves. They call an InfrastructureEngine, which returns
structured results (exit code plus captured output). TerraformEngine in
terraform.py is the production implementation; tests use an in-memory one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .context import Context
from .declarations import Declarations
from .models import StateStoreRef


class EngineError(Exception):
    """Raised when the engine cannot run an operation at all.

    Examples: executable missing, timeout, unparsable output, failed init.
    A command that runs and reports failure is a result, not an EngineError.
    """

    pass


class ConcurrencyError(EngineError):
    """Raised when the state store is locked by another writer.

    Lock acquisition and backoff are left to the caller.
    """

    pass


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def diagnostics(self) -> str:
        return (self.stderr or self.stdout).strip()


@dataclass(frozen=True)
class PlanOutput:
    """Outcome of a dry-run plan.

    exit_code follows `terraform plan -detailed-exitcode`: 0 no changes,
    2 changes present, anything else failed. plan_json holds the
    `terraform show -json` document when the plan succeeded.
    """

    exit_code: int
    plan_json: dict[str, Any] | None = None
    raw_diagnostics: str = ""


@dataclass(frozen=True)
class ApplyOutput:
    """Outcome of one apply run with its machine-readable event stream."""

    exit_code: int
    events: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    raw_diagnostics: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class InfrastructureEngine(ABC):
    """Operations the recovery toolkit needs from a declarative engine.

    Every call takes an explicit Context. Implementations must not read
    credentials or subscription settings from anywhere else.
    """

    @abstractmethod
    def plan(
        self, ctx: Context, declarations: Declarations, store: StateStoreRef
    ) -> PlanOutput:
        """Run a dry-run plan. Must not modify the state store."""

    @abstractmethod
    def apply(
        self,
        ctx: Context,
        declarations: Declarations,
        store: StateStoreRef,
        *,
        parallelism: int,
        auto_approve: bool,
    ) -> ApplyOutput:
        """Run one apply and return its event stream."""

    @abstractmethod
    def state_list(
        self, ctx: Context, declarations: Declarations, store: StateStoreRef
    ) -> list[str]:
        """Return every resource instance address in the state store."""

    @abstractmethod
    def state_remove(
        self, ctx: Context, declarations: Declarations, store: StateStoreRef, address: str
    ) -> CommandResult:
        """Drop one address from state without touching the real resource."""

    @abstractmethod
    def state_import(
        self,
        ctx: Context,
        declarations: Declarations,
        store: StateStoreRef,
        address: str,
        external_id: str,
    ) -> CommandResult:
        """Bind an existing provider-side object to an address."""

    @abstractmethod
    def resource_exists(self, ctx: Context, external_id: str) -> bool:
        """Whether the provider-side object identified by external_id exists."""

    @abstractmethod
    def snapshot_state(
        self, ctx: Context, declarations: Declarations, store: StateStoreRef
    ) -> bytes | None:
        """Capture the full state content. None means no state exists yet."""

    @abstractmethod
    def restore_state(
        self,
        ctx: Context,
        declarations: Declarations,
        store: StateStoreRef,
        snapshot: bytes | None,
    ) -> None:
        """Put back content captured by snapshot_state."""

"""Domain types shared by the plan analyzer, recovery engine and state surgery.

Everything here is immutable. Records produced during an apply run are
threaded through the recovery loop as tuples and never mutated in place.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class InputError(Exception):
    """Raised for malformed caller input (addresses, declarations, store refs).

    Input errors are surfaced immediately and never retried.
    """

    pass


# =============================================================================
# Resource addresses
# =============================================================================

# One dotted segment: an identifier with an optional [0] or ["key"] suffix
_SEGMENT_PATTERN = re.compile(
    r'(?P<name>[A-Za-z_][A-Za-z0-9_-]*)(?:\[(?P<index>\d+|"(?:[^"\\]|\\.)*")\])?'
)

MODE_MANAGED = "managed"
MODE_DATA = "data"

InstanceKey = int | str | None


def _parse_index(raw: str | None) -> InstanceKey:
    if raw is None:
        return None
    if raw.startswith('"'):
        return raw[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return int(raw)


def _format_index(index: InstanceKey) -> str:
    if index is None:
        return ""
    if isinstance(index, int):
        return f"[{index}]"
    escaped = index.replace("\\", "\\\\").replace('"', '\\"')
    return f'["{escaped}"]'


@dataclass(frozen=True)
class ModuleStep:
    """One `module.<name>[<index>]` hop in a module path."""

    name: str
    index: InstanceKey = None

    def __str__(self) -> str:
        return f"module.{self.name}{_format_index(self.index)}"


@dataclass(frozen=True)
class ResourceAddress:
    """Parsed Terraform resource instance address.

    Examples:
        azurerm_resource_group.rg
        module.sap_system.azurerm_linux_virtual_machine.app[0]
        module.landscape["eu"].data.azurerm_client_config.current
    """

    resource_type: str
    name: str
    mode: str = MODE_MANAGED
    module_path: tuple[ModuleStep, ...] = ()
    index: InstanceKey = None

    @classmethod
    def parse(cls, value: str) -> ResourceAddress:
        """Parse an address string.

        Raises:
            InputError: If the value is not a valid resource instance address.
        """
        if not isinstance(value, str) or not value.strip():
            raise InputError("Resource address must be a non-empty string")

        text = value.strip()
        segments: list[tuple[str, InstanceKey]] = []
        pos = 0
        while True:
            match = _SEGMENT_PATTERN.match(text, pos)
            if match is None:
                raise InputError(f"Invalid resource address '{value}' at position {pos}")
            segments.append((match.group("name"), _parse_index(match.group("index"))))
            pos = match.end()
            if pos == len(text):
                break
            if text[pos] != ".":
                raise InputError(f"Invalid resource address '{value}' at position {pos}")
            pos += 1

        modules: list[ModuleStep] = []
        i = 0
        while i < len(segments) and segments[i][0] == "module" and len(segments) - i > 2:
            keyword_index = segments[i][1]
            if keyword_index is not None:
                raise InputError(f"Invalid module segment in address '{value}'")
            module_name, module_index = segments[i + 1]
            modules.append(ModuleStep(module_name, module_index))
            i += 2

        mode = MODE_MANAGED
        if segments[i][0] == "data" and len(segments) - i == 3:
            if segments[i][1] is not None:
                raise InputError(f"Invalid data segment in address '{value}'")
            mode = MODE_DATA
            i += 1

        remaining = segments[i:]
        if len(remaining) != 2:
            raise InputError(
                f"Resource address '{value}' must end in <type>.<name>[<index>]"
            )
        (resource_type, type_index), (name, index) = remaining
        if type_index is not None:
            raise InputError(f"Resource type cannot carry an index in address '{value}'")
        if resource_type in ("module", "data"):
            raise InputError(f"Address '{value}' does not name a resource instance")

        return cls(
            resource_type=resource_type,
            name=name,
            mode=mode,
            module_path=tuple(modules),
            index=index,
        )

    @property
    def base(self) -> ResourceAddress:
        """The same address without its instance index."""
        if self.index is None:
            return self
        return ResourceAddress(
            resource_type=self.resource_type,
            name=self.name,
            mode=self.mode,
            module_path=self.module_path,
        )

    @property
    def is_indexed(self) -> bool:
        return self.index is not None

    def __str__(self) -> str:
        parts = [str(step) for step in self.module_path]
        if self.mode == MODE_DATA:
            parts.append("data")
        parts.append(self.resource_type)
        parts.append(f"{self.name}{_format_index(self.index)}")
        return ".".join(parts)


# =============================================================================
# State store reference
# =============================================================================

AZURERM_SCHEME = "azurerm://"


@dataclass(frozen=True)
class StateStoreRef:
    """Opaque reference to a Terraform state store.

    Either a local state file path or an azurerm backend handle of the form
    ``azurerm://<subscription>/<resource_group>/<storage_account>/<container>/<key>``.
    """

    raw: str
    local_path: Path | None = None
    subscription_id: str = ""
    resource_group: str = ""
    storage_account: str = ""
    container: str = ""
    key: str = ""

    @classmethod
    def parse(cls, value: str) -> StateStoreRef:
        if not value or not value.strip():
            raise InputError("State store reference must not be empty")

        value = value.strip()
        if not value.startswith(AZURERM_SCHEME):
            return cls(raw=value, local_path=Path(value))

        parts = value[len(AZURERM_SCHEME):].split("/", 4)
        if len(parts) != 5 or not all(parts):
            raise InputError(
                f"Invalid azurerm state store '{value}'. Expected "
                "azurerm://<subscription>/<resource_group>/<storage_account>/<container>/<key>"
            )
        subscription_id, resource_group, storage_account, container, key = parts
        return cls(
            raw=value,
            subscription_id=subscription_id,
            resource_group=resource_group,
            storage_account=storage_account,
            container=container,
            key=key,
        )

    @property
    def is_remote(self) -> bool:
        return self.local_path is None

    def backend_config(self) -> dict[str, str]:
        """Backend settings passed to `terraform init -backend-config`."""
        if not self.is_remote:
            return {}
        return {
            "subscription_id": self.subscription_id,
            "resource_group_name": self.resource_group,
            "storage_account_name": self.storage_account,
            "container_name": self.container,
            "key": self.key,
        }

    def __str__(self) -> str:
        return self.raw


# =============================================================================
# Plan analysis
# =============================================================================


class PlanAction(str, Enum):
    """Action Terraform intends to take on one resource instance."""

    NO_OP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "destroy-and-recreate"
    DELETE = "delete"


class PlanStatus(str, Enum):
    """Overall classification of a plan run."""

    NO_CHANGES = "no-changes"
    CHANGES_PENDING = "changes-pending"
    FAILED = "failed"


DESTRUCTIVE_ACTIONS = frozenset({PlanAction.REPLACE, PlanAction.DELETE})


@dataclass(frozen=True)
class PlanEntry:
    address: str
    resource_type: str
    action: PlanAction
    reason: str = ""

    @property
    def is_destructive(self) -> bool:
        return self.action in DESTRUCTIVE_ACTIONS


@dataclass(frozen=True)
class PlanReport:
    """Result of analysing one dry-run plan."""

    status: PlanStatus
    entries: tuple[PlanEntry, ...] = ()
    high_risk_entries: tuple[PlanEntry, ...] = ()
    raw_diagnostics: str = ""

    @property
    def has_high_risk(self) -> bool:
        return bool(self.high_risk_entries)

    def count(self, action: PlanAction) -> int:
        return sum(1 for entry in self.entries if entry.action == action)

    def action_counts(self) -> dict[str, int]:
        """Entry counts keyed by action value, zero counts included."""
        return {action.value: self.count(action) for action in PlanAction}


# =============================================================================
# Apply errors and remediation
# =============================================================================


class ErrorClassification(str, Enum):
    ALREADY_EXISTS = "already-exists"
    STALE_REFERENCE = "stale-reference"
    TRANSIENT = "transient"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


class RemediationKind(str, Enum):
    IMPORT = "import"
    REMOVE = "remove"
    RETRY_ONLY = "retry-only"


class RemediationOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    """What happened at the end of one apply attempt."""

    SUCCEEDED = "succeeded"
    RETRYING = "retrying"  # remediations done, another attempt follows
    FAILED = "failed"  # unrecoverable errors, run ends
    EXHAUSTED = "exhausted"  # attempt budget spent
    CANCELLED = "cancelled"


class ApplyOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    UNRECOVERABLE = "unrecoverable"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    DECLINED = "declined"


# CLI exit codes
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INVALID_INPUT = 2
EXIT_RETRIES_EXHAUSTED = 3

EXIT_CODE_MEANINGS: dict[int, str] = {
    EXIT_SUCCESS: "success",
    EXIT_FAILURE: "general failure",
    EXIT_INVALID_INPUT: "invalid input or address not found",
    EXIT_RETRIES_EXHAUSTED: "retries exhausted",
}

_SUGGESTED_REMEDIATION: dict[ErrorClassification, RemediationKind | None] = {
    ErrorClassification.ALREADY_EXISTS: RemediationKind.IMPORT,
    ErrorClassification.STALE_REFERENCE: RemediationKind.REMOVE,
    ErrorClassification.TRANSIENT: RemediationKind.RETRY_ONLY,
    ErrorClassification.PERMISSION: None,
    ErrorClassification.UNKNOWN: None,
}


@dataclass(frozen=True)
class ApplyError:
    """One error diagnostic extracted from an apply event stream."""

    address: ResourceAddress | None
    message: str
    detail: str = ""
    classification: ErrorClassification = ErrorClassification.UNKNOWN
    external_id: str | None = None

    @property
    def suggested_remediation(self) -> RemediationKind | None:
        """Remediation for this error, or None when it needs a human."""
        kind = _SUGGESTED_REMEDIATION[self.classification]
        if kind is RemediationKind.IMPORT and (not self.external_id or self.address is None):
            return None
        if kind is RemediationKind.REMOVE and self.address is None:
            return None
        return kind

    @property
    def signature(self) -> tuple[str, str]:
        """Identity used to recognise the same error across attempts."""
        return (str(self.address) if self.address else "", self.message)

    def summary(self) -> str:
        target = str(self.address) if self.address else "<no address>"
        return f"[{self.classification.value}] {target}: {self.message}"


@dataclass(frozen=True)
class RemediationAction:
    """A corrective step taken in response to one classified apply error."""

    kind: RemediationKind
    address: ResourceAddress | None = None
    external_id: str | None = None
    outcome: RemediationOutcome = RemediationOutcome.SUCCEEDED
    message: str = ""

    def __post_init__(self) -> None:
        if self.kind is RemediationKind.IMPORT:
            if self.address is None:
                raise ValueError("Import remediation requires an address")
            if not self.external_id:
                raise ValueError("Import remediation requires a non-empty external id")
        if self.kind is RemediationKind.REMOVE and self.address is None:
            raise ValueError("Remove remediation requires an address")

    @property
    def succeeded(self) -> bool:
        return self.outcome is RemediationOutcome.SUCCEEDED

    @property
    def mutates_state(self) -> bool:
        return self.kind in (RemediationKind.IMPORT, RemediationKind.REMOVE)

    def summary(self) -> str:
        """One-line description for the failure report."""
        target = str(self.address) if self.address else "<run>"
        line = f"{self.kind.value} {target}"
        if self.external_id:
            line += f" <- {self.external_id}"
        line += f": {self.outcome.value}"
        if self.message:
            line += f" ({self.message})"
        return line


@dataclass(frozen=True)
class AttemptRecord:
    attempt: int
    errors: tuple[ApplyError, ...] = ()
    actions: tuple[RemediationAction, ...] = ()
    outcome: AttemptOutcome = AttemptOutcome.SUCCEEDED


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of one apply-with-recovery invocation, with its audit log."""

    outcome: ApplyOutcome
    records: tuple[AttemptRecord, ...] = ()
    unrecovered_errors: tuple[ApplyError, ...] = ()
    pending_verification: frozenset[ResourceAddress] = field(default_factory=frozenset)

    @property
    def success(self) -> bool:
        return self.outcome is ApplyOutcome.SUCCEEDED

    @property
    def cancelled(self) -> bool:
        return self.outcome is ApplyOutcome.CANCELLED

    @property
    def attempts(self) -> int:
        return len(self.records)

    @property
    def remediations(self) -> tuple[RemediationAction, ...]:
        return tuple(action for record in self.records for action in record.actions)

    @property
    def exit_code(self) -> int:
        if self.outcome is ApplyOutcome.SUCCEEDED:
            return EXIT_SUCCESS
        if self.outcome is ApplyOutcome.EXHAUSTED:
            return EXIT_RETRIES_EXHAUSTED
        return EXIT_FAILURE

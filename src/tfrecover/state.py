"""State surgery: list, remove and import entries in a state store.

Every mutation is wrapped in a snapshot. If the Terraform command fails,
raises, or the process is interrupted (KeyboardInterrupt, SystemExit), the
snapshot is written back before the exception propagates, so the store
either holds the full result of the operation or its prior content.

Addresses changed here stay "pending verification" until a later apply has
run against the store; the recovery engine clears them with mark_verified().
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from .context import Context
from .declarations import Declarations
from .engine import CommandResult, InfrastructureEngine
from .models import InputError, ResourceAddress, StateStoreRef

logger = logging.getLogger(__name__)


class StateOperationStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not-found"
    ALREADY_BOUND = "already-bound"
    AMBIGUOUS = "ambiguous"
    FAILED = "failed"


@dataclass(frozen=True)
class StateOperationResult:
    """Result of one state surgery operation.

    ok is True when the store is in the state the caller asked for. A
    remove of an absent address is NOT_FOUND but still ok.
    """

    status: StateOperationStatus
    address: ResourceAddress
    ok: bool
    message: str = ""


class _CommandFailed(Exception):
    def __init__(self, result: CommandResult) -> None:
        super().__init__(result.diagnostics)
        self.result = result


class StateListing:
    """Lazy, restartable view of the addresses in a state store.

    Each iteration queries the store again, so it always reflects the
    current content.
    """

    def __init__(self, surgeon: StateSurgeon) -> None:
        self._surgeon = surgeon

    def __iter__(self) -> Iterator[ResourceAddress]:
        for raw in self._surgeon._raw_addresses():
            yield ResourceAddress.parse(raw)


class StateSurgeon:
    """Direct operations on one state store."""

    def __init__(
        self,
        engine: InfrastructureEngine,
        ctx: Context,
        declarations: Declarations,
        store: StateStoreRef,
    ) -> None:
        self._engine = engine
        self._ctx = ctx
        self._declarations = declarations
        self._store = store
        self._pending: set[ResourceAddress] = set()

    @property
    def store(self) -> StateStoreRef:
        return self._store

    @property
    def pending_verification(self) -> frozenset[ResourceAddress]:
        """Addresses mutated since the last apply attempt."""
        return frozenset(self._pending)

    def mark_verified(self) -> frozenset[ResourceAddress]:
        """Clear and return the pending set after an apply attempt has run."""
        verified = frozenset(self._pending)
        self._pending.clear()
        return verified

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def _raw_addresses(self) -> list[str]:
        return self._engine.state_list(self._ctx, self._declarations, self._store)

    def list(self) -> StateListing:
        return StateListing(self)

    def _current(self) -> set[ResourceAddress]:
        return set(self.list())

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    @contextmanager
    def _atomic(self, operation: str, address: ResourceAddress) -> Iterator[None]:
        snapshot = self._engine.snapshot_state(self._ctx, self._declarations, self._store)
        try:
            yield
        except BaseException as e:
            logger.warning(
                "State operation did not complete, restoring snapshot",
                extra={
                    "operation": operation,
                    "address": str(address),
                    "error_type": type(e).__name__,
                },
            )
            self._engine.restore_state(self._ctx, self._declarations, self._store, snapshot)
            raise

    def _check(self, result: CommandResult) -> None:
        if not result.ok:
            raise _CommandFailed(result)

    def remove(self, address: ResourceAddress) -> StateOperationResult:
        """Remove an address from state without touching the real resource."""
        if address not in self._current():
            logger.info("Address not in state, nothing to remove", extra={"address": str(address)})
            return StateOperationResult(
                StateOperationStatus.NOT_FOUND,
                address,
                ok=True,
                message="address not present in state",
            )

        try:
            with self._atomic("remove", address):
                self._check(
                    self._engine.state_remove(
                        self._ctx, self._declarations, self._store, str(address)
                    )
                )
        except _CommandFailed as e:
            logger.error("State remove failed", extra={"address": str(address), "error": str(e)})
            return StateOperationResult(StateOperationStatus.FAILED, address, ok=False, message=str(e))

        self._pending.add(address)
        logger.info("Removed address from state", extra={"address": str(address)})
        return StateOperationResult(StateOperationStatus.OK, address, ok=True)

    def _precheck_import(
        self, address: ResourceAddress, external_id: str, current: set[ResourceAddress]
    ) -> StateOperationResult | None:
        instances = sum(1 for other in current if other.is_indexed and other.base == address)
        if not address.is_indexed and instances > 1:
            return StateOperationResult(
                StateOperationStatus.AMBIGUOUS,
                address,
                ok=False,
                message=f"address matches {instances} indexed instances; specify the index",
            )
        if not self._engine.resource_exists(self._ctx, external_id):
            return StateOperationResult(
                StateOperationStatus.NOT_FOUND,
                address,
                ok=False,
                message=f"external id does not resolve: {external_id}",
            )
        return None

    def import_resource(self, address: ResourceAddress, external_id: str) -> StateOperationResult:
        """Bind an existing provider-side object to an address.

        Never overwrites: an address already in state yields ALREADY_BOUND.
        """
        if not external_id or not external_id.strip():
            raise InputError("Import requires a non-empty external id")

        current = self._current()
        if address in current:
            return StateOperationResult(
                StateOperationStatus.ALREADY_BOUND,
                address,
                ok=False,
                message="address already present in state; remove it first",
            )
        failed_check = self._precheck_import(address, external_id, current)
        if failed_check is not None:
            return failed_check

        try:
            with self._atomic("import", address):
                self._check(
                    self._engine.state_import(
                        self._ctx, self._declarations, self._store, str(address), external_id
                    )
                )
        except _CommandFailed as e:
            logger.error(
                "State import failed",
                extra={"address": str(address), "external_id": external_id, "error": str(e)},
            )
            return StateOperationResult(StateOperationStatus.FAILED, address, ok=False, message=str(e))

        self._pending.add(address)
        logger.info(
            "Imported resource into state",
            extra={"address": str(address), "external_id": external_id},
        )
        return StateOperationResult(StateOperationStatus.OK, address, ok=True)

    def replace(self, address: ResourceAddress, external_id: str) -> StateOperationResult:
        """Rebind an address to external_id: remove (if present) then import.

        Both steps share one snapshot, so a failed import puts the removed
        entry back.
        """
        if not external_id or not external_id.strip():
            raise InputError("Import requires a non-empty external id")

        current = self._current()
        failed_check = self._precheck_import(address, external_id, current)
        if failed_check is not None:
            return failed_check

        try:
            with self._atomic("replace", address):
                if address in current:
                    self._check(
                        self._engine.state_remove(
                            self._ctx, self._declarations, self._store, str(address)
                        )
                    )
                self._check(
                    self._engine.state_import(
                        self._ctx, self._declarations, self._store, str(address), external_id
                    )
                )
        except _CommandFailed as e:
            logger.error(
                "State replace failed",
                extra={"address": str(address), "external_id": external_id, "error": str(e)},
            )
            return StateOperationResult(StateOperationStatus.FAILED, address, ok=False, message=str(e))

        self._pending.add(address)
        logger.info(
            "Replaced state binding",
            extra={"address": str(address), "external_id": external_id},
        )
        return StateOperationResult(StateOperationStatus.OK, address, ok=True)

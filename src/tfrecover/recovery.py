"""Apply with recovery: a bounded retry loop around `terraform apply`.

Per attempt:
1. Run apply and parse the error diagnostics out of its event stream.
2. No errors: done.
3. Otherwise classify each error and remediate it before the next attempt:
   - already-exists   -> import the ID named in the message (rebind if the
                         address is already in state)
   - stale-reference  -> remove the address from state
   - transient        -> retry only, after a linear backoff
   - permission / unknown -> one bare retry per distinct error, and only
                         when nothing else went wrong in the attempt
   A remediation that fails makes its error unrecoverable. Without
   fail-fast, other successful state changes get one verifying apply,
   after which the run ends unrecoverable.
4. Stop on success, on unrecoverable errors, on cancellation, or when the
   attempt budget is spent.

Attempt records are accumulated as an immutable tuple and returned with
the result on every exit path.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from .analyzer import PlanAnalyzer
from .classifier import build_apply_error, parse_apply_events, unknown_error_from_output
from .config import Config
from .context import Context
from .declarations import Declarations
from .engine import ConcurrencyError, EngineError, InfrastructureEngine
from .models import (
    ApplyError,
    ApplyOutcome,
    ApplyResult,
    AttemptOutcome,
    AttemptRecord,
    ErrorClassification,
    InputError,
    PlanReport,
    PlanStatus,
    RemediationAction,
    RemediationKind,
    RemediationOutcome,
    ResourceAddress,
    StateStoreRef,
)
from .provenance import ApplyProvenance, get_provenance_logger
from .state import StateOperationStatus, StateSurgeon

logger = logging.getLogger(__name__)

# Called with the plan report when auto-approve is off; True means go ahead
Approver = Callable[[PlanReport], bool]

_NEEDS_HUMAN = frozenset({ErrorClassification.PERMISSION, ErrorClassification.UNKNOWN})


@dataclass(frozen=True)
class _RemediationPass:
    """What remediating one attempt's errors produced."""

    actions: tuple[RemediationAction, ...]
    unrecoverable: tuple[ApplyError, ...]

    @property
    def mutated_state(self) -> bool:
        return any(a.mutates_state and a.succeeded for a in self.actions)

    @property
    def needs_backoff(self) -> bool:
        return any(a.kind is RemediationKind.RETRY_ONLY for a in self.actions)


class RecoveryEngine:
    """Runs apply with classification-driven remediation between attempts."""

    def __init__(
        self,
        engine: InfrastructureEngine,
        ctx: Context,
        config: Config,
        analyzer: PlanAnalyzer | None = None,
    ) -> None:
        self._engine = engine
        self._ctx = ctx
        self._config = config
        self._analyzer = analyzer or PlanAnalyzer(
            engine, ctx, config.destructive_resource_patterns
        )
        self._provenance_logger = get_provenance_logger()

    def apply_with_recovery(
        self,
        declarations: Declarations,
        store: StateStoreRef,
        max_attempts: int | None = None,
        auto_approve: bool = False,
        parallelism: int | None = None,
        *,
        fail_fast: bool | None = None,
        cancel_event: threading.Event | None = None,
        approver: Approver | None = None,
    ) -> ApplyResult:
        """Apply declarations to the store, remediating errors between attempts.

        Args:
            declarations: Module directory and variables to apply.
            store: State store to apply against.
            max_attempts: Upper bound on apply attempts (config default).
            auto_approve: Skip the plan review. When False, approver decides.
            parallelism: Terraform -parallelism (config default).
            fail_fast: Stop at the first unrecoverable error (config default).
            cancel_event: Checked between attempts and during backoff.
            approver: Review callback used when auto_approve is False.

        Raises:
            InputError: For invalid bounds or a missing approver.
            ConcurrencyError: If the state store is locked.
        """
        max_attempts = self._config.max_attempts if max_attempts is None else max_attempts
        parallelism = self._config.parallelism if parallelism is None else parallelism
        fail_fast = self._config.fail_fast if fail_fast is None else fail_fast
        if max_attempts < 1:
            raise InputError(f"max_attempts must be at least 1, got {max_attempts}")
        if parallelism < 1:
            raise InputError(f"parallelism must be at least 1, got {parallelism}")
        if not auto_approve and approver is None:
            raise InputError("An approver is required when auto_approve is false")

        cancel = cancel_event or threading.Event()
        surgeon = StateSurgeon(self._engine, self._ctx, declarations, store)
        provenance = self._provenance_logger.create_provenance(
            state_store=store.raw,
            working_dir=str(declarations.working_dir),
            subscription_id=self._ctx.subscription_id,
            max_attempts=max_attempts,
        )

        try:
            if not auto_approve:
                declined = self._review(declarations, store, approver)
                if declined is not None:
                    return self._finish(provenance, declined)

            result = self._run_attempts(
                declarations, store, surgeon, provenance, max_attempts, parallelism, fail_fast, cancel
            )
        except Exception as e:
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            provenance.pending_verification = sorted(str(a) for a in surgeon.pending_verification)
            self._provenance_logger.log_provenance(provenance)
            raise

        return self._finish(provenance, result)

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    def _review(
        self, declarations: Declarations, store: StateStoreRef, approver: Approver
    ) -> ApplyResult | None:
        """Plan and ask for approval. Returns a result only when the run must stop."""
        report = self._analyzer.analyze(declarations, store)

        if report.status is PlanStatus.FAILED:
            error = build_apply_error("Plan failed before apply", report.raw_diagnostics)
            return ApplyResult(outcome=ApplyOutcome.UNRECOVERABLE, unrecovered_errors=(error,))

        if report.status is PlanStatus.NO_CHANGES:
            return None

        if not approver(report):
            logger.info("Apply declined at review", extra={"state_store": store.raw})
            return ApplyResult(outcome=ApplyOutcome.DECLINED)
        return None

    # -------------------------------------------------------------------------
    # Attempt loop
    # -------------------------------------------------------------------------

    def _run_attempts(
        self,
        declarations: Declarations,
        store: StateStoreRef,
        surgeon: StateSurgeon,
        provenance: ApplyProvenance,
        max_attempts: int,
        parallelism: int,
        fail_fast: bool,
        cancel: threading.Event,
    ) -> ApplyResult:
        records: tuple[AttemptRecord, ...] = ()
        retried: frozenset[tuple[str, str]] = frozenset()
        last_errors: tuple[ApplyError, ...] = ()
        # Errors whose remediation failed; set only while a verifying apply runs
        carried: tuple[ApplyError, ...] = ()

        for attempt in range(1, max_attempts + 1):
            if attempt > 1 and cancel.is_set():
                logger.info("Cancelled before attempt", extra={"attempt": attempt})
                return self._result(ApplyOutcome.CANCELLED, records, last_errors, surgeon)

            logger.info(
                "Starting apply attempt",
                extra={"attempt": attempt, "max_attempts": max_attempts, "state_store": store.raw},
            )
            errors = self._apply_once(declarations, store, parallelism)
            verified = surgeon.mark_verified()
            if verified:
                logger.info(
                    "State changes verified by apply",
                    extra={"addresses": sorted(str(a) for a in verified)},
                )

            if carried:
                seen = {e.signature for e in carried}
                unrecovered = carried + tuple(e for e in errors if e.signature not in seen)
                records += (AttemptRecord(attempt, tuple(errors), (), AttemptOutcome.FAILED),)
                logger.error(
                    "Verifying apply done; earlier remediation failures end the run",
                    extra={"attempt": attempt, "errors": [e.summary() for e in unrecovered]},
                )
                return self._result(ApplyOutcome.UNRECOVERABLE, records, unrecovered, surgeon)

            if not errors:
                records += (AttemptRecord(attempt, outcome=AttemptOutcome.SUCCEEDED),)
                logger.info("Apply succeeded", extra={"attempt": attempt})
                return self._result(ApplyOutcome.SUCCEEDED, records, (), surgeon)

            last_errors = tuple(errors)
            if cancel.is_set():
                records += (AttemptRecord(attempt, last_errors, (), AttemptOutcome.CANCELLED),)
                logger.info("Cancelled after attempt", extra={"attempt": attempt})
                return self._result(ApplyOutcome.CANCELLED, records, last_errors, surgeon)

            attempts_left = attempt < max_attempts
            remediation = self._remediate(surgeon, last_errors, retried, attempts_left, fail_fast)
            for action in remediation.actions:
                self._provenance_logger.log_remediation(provenance, attempt, action)

            if remediation.unrecoverable:
                keep_going = (
                    not fail_fast and remediation.mutated_state and attempts_left
                )
                if not keep_going:
                    records += (
                        AttemptRecord(attempt, last_errors, remediation.actions, AttemptOutcome.FAILED),
                    )
                    logger.error(
                        "Apply failed with unrecoverable errors",
                        extra={
                            "attempt": attempt,
                            "errors": [e.summary() for e in remediation.unrecoverable],
                        },
                    )
                    return self._result(
                        ApplyOutcome.UNRECOVERABLE, records, remediation.unrecoverable, surgeon
                    )
                carried = remediation.unrecoverable
                logger.warning(
                    "Unrecoverable errors present; re-applying once to verify state changes",
                    extra={"attempt": attempt},
                )
            elif not attempts_left:
                records += (
                    AttemptRecord(attempt, last_errors, remediation.actions, AttemptOutcome.EXHAUSTED),
                )
                logger.error(
                    "Apply attempts exhausted",
                    extra={"attempts": attempt, "errors": [e.summary() for e in last_errors]},
                )
                return self._result(ApplyOutcome.EXHAUSTED, records, last_errors, surgeon)

            records += (
                AttemptRecord(attempt, last_errors, remediation.actions, AttemptOutcome.RETRYING),
            )
            retried = retried | {
                e.signature for e in last_errors if e.classification in _NEEDS_HUMAN
            }

            if remediation.needs_backoff and self._config.retry_backoff_seconds > 0:
                delay = self._config.retry_backoff_seconds * attempt
                logger.info("Backing off before retry", extra={"delay_seconds": delay})
                if cancel.wait(delay):
                    logger.info("Cancelled during backoff", extra={"attempt": attempt})
                    return self._result(ApplyOutcome.CANCELLED, records, last_errors, surgeon)

        # Every path through the final attempt returns above
        raise AssertionError("attempt loop ended without a result")

    def _apply_once(
        self, declarations: Declarations, store: StateStoreRef, parallelism: int
    ) -> list[ApplyError]:
        try:
            output = self._engine.apply(
                self._ctx, declarations, store, parallelism=parallelism, auto_approve=True
            )
        except ConcurrencyError:
            raise
        except EngineError as e:
            # Timeouts and similar process failures are classified like any error
            logger.warning("Apply could not complete", extra={"error": str(e)})
            return [build_apply_error(str(e))]

        errors = parse_apply_events(output.events)
        if not output.ok and not errors:
            errors = [unknown_error_from_output(output.raw_diagnostics)]
        return errors

    # -------------------------------------------------------------------------
    # Remediation
    # -------------------------------------------------------------------------

    def _remediate(
        self,
        surgeon: StateSurgeon,
        errors: tuple[ApplyError, ...],
        retried: frozenset[tuple[str, str]],
        attempts_left: bool,
        fail_fast: bool,
    ) -> _RemediationPass:
        actions: list[RemediationAction] = []
        unrecoverable: list[ApplyError] = []
        handled: set[ResourceAddress] = set()
        only_needs_human = all(e.classification in _NEEDS_HUMAN for e in errors)

        for error in errors:
            kind = error.suggested_remediation

            if kind is RemediationKind.IMPORT or kind is RemediationKind.REMOVE:
                if error.address in handled:
                    continue
                handled.add(error.address)
                action = self._mutate(surgeon, kind, error)
                actions.append(action)
                if not action.succeeded:
                    unrecoverable.append(error)

            elif kind is RemediationKind.RETRY_ONLY:
                actions.append(
                    RemediationAction(
                        RemediationKind.RETRY_ONLY, error.address, message=error.classification.value
                    )
                )

            elif (
                error.classification in _NEEDS_HUMAN
                and only_needs_human
                and error.signature not in retried
            ):
                if attempts_left:
                    actions.append(
                        RemediationAction(
                            RemediationKind.RETRY_ONLY,
                            error.address,
                            message=f"single retry of {error.classification.value} error",
                        )
                    )
                else:
                    logger.info(
                        "No attempts left for a retry", extra={"error": error.summary()}
                    )

            else:
                unrecoverable.append(error)

            if unrecoverable and fail_fast:
                logger.warning("Stopping remediation at first unrecoverable error (fail-fast)")
                break

        return _RemediationPass(tuple(actions), tuple(unrecoverable))

    def _mutate(
        self, surgeon: StateSurgeon, kind: RemediationKind, error: ApplyError
    ) -> RemediationAction:
        address = error.address
        try:
            if kind is RemediationKind.IMPORT:
                outcome = surgeon.import_resource(address, error.external_id)
                if outcome.status is StateOperationStatus.ALREADY_BOUND:
                    logger.info(
                        "Address already bound, rebinding to the existing resource",
                        extra={"address": str(address), "external_id": error.external_id},
                    )
                    outcome = surgeon.replace(address, error.external_id)
            else:
                outcome = surgeon.remove(address)
        except ConcurrencyError:
            raise
        except EngineError as e:
            return RemediationAction(
                kind,
                address,
                error.external_id if kind is RemediationKind.IMPORT else None,
                RemediationOutcome.FAILED,
                str(e),
            )

        return RemediationAction(
            kind,
            address,
            error.external_id if kind is RemediationKind.IMPORT else None,
            RemediationOutcome.SUCCEEDED if outcome.ok else RemediationOutcome.FAILED,
            outcome.message or outcome.status.value,
        )

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    @staticmethod
    def _result(
        outcome: ApplyOutcome,
        records: tuple[AttemptRecord, ...],
        unrecovered: tuple[ApplyError, ...],
        surgeon: StateSurgeon,
    ) -> ApplyResult:
        return ApplyResult(
            outcome=outcome,
            records=records,
            unrecovered_errors=unrecovered,
            pending_verification=surgeon.pending_verification,
        )

    def _finish(self, provenance: ApplyProvenance, result: ApplyResult) -> ApplyResult:
        provenance.record_result(result)
        self._provenance_logger.log_provenance(provenance)
        return result

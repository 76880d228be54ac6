"""Plan analysis and destructive-change detection.

Runs a dry-run plan, turns `terraform show -json` resource changes into
PlanEntry records, and flags replacements and deletions of resource types
that match the destructive patterns (storage accounts, key vaults, VMs and
other resources whose loss takes data or connectivity with it).
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any

from .config import DEFAULT_DESTRUCTIVE_RESOURCE_PATTERNS
from .context import Context
from .declarations import Declarations
from .engine import ConcurrencyError, EngineError, InfrastructureEngine
from .models import InputError, PlanAction, PlanEntry, PlanReport, PlanStatus, StateStoreRef

logger = logging.getLogger(__name__)

_ACTIONS: dict[tuple[str, ...], PlanAction] = {
    ("no-op",): PlanAction.NO_OP,
    ("read",): PlanAction.NO_OP,
    ("create",): PlanAction.CREATE,
    ("update",): PlanAction.UPDATE,
    ("delete",): PlanAction.DELETE,
    ("delete", "create"): PlanAction.REPLACE,
    ("create", "delete"): PlanAction.REPLACE,
}

BANNER_WIDTH = 80


def map_actions(actions: Iterable[str]) -> PlanAction:
    """Map a Terraform `change.actions` list to a PlanAction."""
    key = tuple(actions)
    action = _ACTIONS.get(key)
    if action is None:
        logger.warning("Unrecognised plan actions, treating as update", extra={"actions": list(key)})
        return PlanAction.UPDATE
    return action


def parse_resource_changes(plan_json: dict[str, Any]) -> list[PlanEntry]:
    """Ordered PlanEntry list from a `terraform show -json` plan document."""
    entries: list[PlanEntry] = []
    for change in plan_json.get("resource_changes") or []:
        actions = (change.get("change") or {}).get("actions") or ["no-op"]
        entries.append(
            PlanEntry(
                address=change.get("address", ""),
                resource_type=change.get("type", ""),
                action=map_actions(actions),
                reason=change.get("action_reason") or "",
            )
        )
    return entries


def compile_patterns(patterns: Iterable[str]) -> list[re.Pattern[str]]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise InputError(f"Invalid destructive resource pattern '{pattern}': {e}") from e
    return compiled


def is_high_risk(entry: PlanEntry, patterns: list[re.Pattern[str]]) -> bool:
    return entry.is_destructive and any(p.search(entry.resource_type) for p in patterns)


class PlanAnalyzer:
    """Produces risk reports from dry-run plans. Never mutates state."""

    def __init__(
        self,
        engine: InfrastructureEngine,
        ctx: Context,
        destructive_patterns: Iterable[str] = DEFAULT_DESTRUCTIVE_RESOURCE_PATTERNS,
    ) -> None:
        self._engine = engine
        self._ctx = ctx
        self._default_patterns = tuple(destructive_patterns)

    def analyze(
        self,
        declarations: Declarations,
        store: StateStoreRef,
        destructive_patterns: Iterable[str] | None = None,
    ) -> PlanReport:
        """Plan the declarations against the store and classify the result.

        An engine failure (backend unreachable, missing credentials, plan
        errors) yields a FAILED report carrying the raw diagnostics. Lock
        contention is not a plan failure and propagates as ConcurrencyError.
        """
        patterns = compile_patterns(
            self._default_patterns if destructive_patterns is None else destructive_patterns
        )

        try:
            output = self._engine.plan(self._ctx, declarations, store)
        except ConcurrencyError:
            raise
        except EngineError as e:
            logger.error("Plan could not run", extra={"error": str(e), "state_store": store.raw})
            return PlanReport(status=PlanStatus.FAILED, raw_diagnostics=str(e))

        if output.exit_code not in (0, 2) or output.plan_json is None:
            logger.error(
                "Plan failed",
                extra={"exit_code": output.exit_code, "state_store": store.raw},
            )
            return PlanReport(status=PlanStatus.FAILED, raw_diagnostics=output.raw_diagnostics)

        entries = parse_resource_changes(output.plan_json)
        high_risk = [entry for entry in entries if is_high_risk(entry, patterns)]
        status = PlanStatus.NO_CHANGES if output.exit_code == 0 else PlanStatus.CHANGES_PENDING

        report = PlanReport(
            status=status,
            entries=tuple(entries),
            high_risk_entries=tuple(high_risk),
            raw_diagnostics=output.raw_diagnostics,
        )
        logger.info(
            "Plan analysed",
            extra={
                "status": status.value,
                "action_counts": report.action_counts(),
                "high_risk_count": len(high_risk),
            },
        )
        return report


def report_to_dict(report: PlanReport) -> dict[str, Any]:
    """JSON-serialisable form of a report."""

    def entry_dict(entry: PlanEntry) -> dict[str, str]:
        return {
            "address": entry.address,
            "resource_type": entry.resource_type,
            "action": entry.action.value,
            "reason": entry.reason,
        }

    return {
        "status": report.status.value,
        "counts": report.action_counts(),
        "entries": [entry_dict(e) for e in report.entries],
        "high_risk_entries": [entry_dict(e) for e in report.high_risk_entries],
        "raw_diagnostics": report.raw_diagnostics,
    }


def render_report(report: PlanReport) -> str:
    """Human-readable plan summary with the destructive-changes block."""
    lines = [f"Plan status: {report.status.value}"]

    if report.status is PlanStatus.FAILED:
        lines.append("")
        lines.append("Plan diagnostics:")
        lines.extend(f"  {line}" for line in report.raw_diagnostics.splitlines() or ["<none>"])
        return "\n".join(lines)

    counts = report.action_counts()
    lines.append("  " + ", ".join(f"{action}: {count}" for action, count in counts.items()))

    changed = [e for e in report.entries if e.action is not PlanAction.NO_OP]
    if changed:
        lines.append("")
        for entry in changed:
            suffix = f" ({entry.reason})" if entry.reason else ""
            lines.append(f"  {entry.action.value:<22} {entry.address}{suffix}")

    if report.has_high_risk:
        recreated = [e for e in report.high_risk_entries if e.action is PlanAction.REPLACE]
        destroyed = [e for e in report.high_risk_entries if e.action is PlanAction.DELETE]
        border = "#" * BANNER_WIDTH
        lines.extend(["", border, "#" + "DESTRUCTIVE CHANGES DETECTED".center(BANNER_WIDTH - 2) + "#", border])
        if recreated:
            lines.append("Resources to be RECREATED:")
            lines.extend(f"  - {e.address}" for e in recreated)
        if destroyed:
            lines.append("Resources to be DESTROYED:")
            lines.extend(f"  - {e.address}" for e in destroyed)
        lines.append(border)

    return "\n".join(lines)

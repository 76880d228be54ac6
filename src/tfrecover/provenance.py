"""Run provenance for audit.

Each apply-with-recovery run is stamped with a provenance record that
answers "which code applied what to which state store, and what did the
recovery loop have to do to get there":
- tool version and git commit of the declarations
- state store and working directory
- attempts, remediations by kind, final outcome
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .models import ApplyOutcome, ApplyResult, RemediationAction, RemediationKind

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
TOOL_VERSION = os.environ.get("TFRECOVER_VERSION", "dev")


@dataclass
class RemediationSummary:
    imports: int = 0
    removes: int = 0
    retries: int = 0
    failed: int = 0

    @property
    def state_mutations(self) -> int:
        return self.imports + self.removes


@dataclass
class ApplyProvenance:
    """Complete provenance record for one apply-with-recovery run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    tool_version: str = TOOL_VERSION
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""

    state_store: str = ""
    working_dir: str = ""
    subscription_id: str = ""

    outcome: str = ""
    attempts: int = 0
    max_attempts: int = 0
    remediation_summary: RemediationSummary = field(default_factory=RemediationSummary)
    unrecovered_count: int = 0
    pending_verification: list[str] = field(default_factory=list)

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def record_result(self, result: ApplyResult) -> None:
        """Copy the outcome and remediation counts of a finished run."""
        self.outcome = result.outcome.value
        self.attempts = result.attempts
        self.unrecovered_count = len(result.unrecovered_errors)
        self.pending_verification = sorted(str(a) for a in result.pending_verification)
        summary = RemediationSummary()
        for action in result.remediations:
            if not action.succeeded:
                summary.failed += 1
            elif action.kind is RemediationKind.IMPORT:
                summary.imports += 1
            elif action.kind is RemediationKind.REMOVE:
                summary.removes += 1
            else:
                summary.retries += 1
        self.remediation_summary = summary
        self.duration_seconds = (datetime.now(UTC) - self.timestamp).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured log stream."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._git_repo = os.environ.get("GIT_REPO", "")

    def create_provenance(
        self,
        state_store: str,
        working_dir: str,
        subscription_id: str,
        max_attempts: int,
    ) -> ApplyProvenance:
        return ApplyProvenance(
            tool_version=TOOL_VERSION,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            state_store=state_store,
            working_dir=working_dir,
            subscription_id=subscription_id,
            max_attempts=max_attempts,
        )

    def log_provenance(self, provenance: ApplyProvenance) -> None:
        """Log a completed provenance record.

        Enables queries like "which runs against this state store needed
        imports" or "which commit kept exhausting its retries".
        """
        log_level = logging.INFO
        if provenance.error or provenance.outcome in (
            ApplyOutcome.UNRECOVERABLE.value,
            ApplyOutcome.EXHAUSTED.value,
        ):
            log_level = logging.ERROR
        elif provenance.remediation_summary.state_mutations > 0 or provenance.pending_verification:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Apply provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "state_store": provenance.state_store,
                "outcome": provenance.outcome,
                "attempts": provenance.attempts,
                "state_mutations": provenance.remediation_summary.state_mutations,
                "git_commit": provenance.git_commit_sha,
                "tool_version": provenance.tool_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_remediation(
        self, provenance: ApplyProvenance, attempt: int, action: RemediationAction
    ) -> None:
        """Log one remediation step for fine-grained audit."""
        logger.info(
            "Remediation",
            extra={
                "state_store": provenance.state_store,
                "git_commit": provenance.git_commit_sha,
                "attempt": attempt,
                "kind": action.kind.value,
                "address": str(action.address) if action.address else None,
                "external_id": action.external_id,
                "outcome": action.outcome.value,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from .errors import InstallerError, PartialCleanupFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Step:
    """A single idempotent step.

    ``requires_active`` steps assume the host is running the state produced by
    earlier steps; they never run while a restart is pending.
    """

    step_id: str
    run: Callable[[Any], None]
    requires_active: bool = False


@dataclass
class RestartRequirement:
    """Set once, never cleared, for the lifetime of one operation."""

    required: bool = False
    reasons: List[str] = field(default_factory=list)

    def require(self, reason: str) -> None:
        if reason not in self.reasons:
            self.reasons.append(reason)
        if not self.required:
            logger.warning("Restart required: %s", reason)
        self.required = True


@dataclass
class CleanupReport:
    """Failures swallowed by best-effort cleanup, kept for the final verdict."""

    failures: List[PartialCleanupFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    def record(self, step_id: str, cause: BaseException) -> None:
        failure = PartialCleanupFailure(step_id, cause)
        logger.warning("Cleanup step failed (continuing): %s", failure)
        self.failures.append(failure)


@dataclass(frozen=True)
class OperationResult:
    operation: str
    success: bool
    restart_required: bool
    ran_steps: List[str]
    skipped_steps: List[str]
    failures: List[PartialCleanupFailure] = field(default_factory=list)


def run_pipeline(
    *,
    operation: str,
    ctx: Any,
    steps: Sequence[Step],
    restart: RestartRequirement,
    report: Optional[CleanupReport] = None,
) -> OperationResult:
    """Run steps in order.

    Without a report the first error propagates (fail-fast). With a report,
    installer and OS errors are recorded and the remaining steps still run.
    A pending restart halts the pipeline before the next ``requires_active``
    step.
    """

    ran: List[str] = []
    skipped: List[str] = []

    for i, step in enumerate(steps):
        if step.requires_active and restart.required:
            skipped = [s.step_id for s in steps[i:]]
            logger.warning("Halting %s before %s until the host restarts", operation, step.step_id)
            break

        logger.info("Running step %s", step.step_id)
        if report is None:
            step.run(ctx)
        else:
            try:
                step.run(ctx)
            except (InstallerError, OSError) as e:
                report.record(step.step_id, e)
        ran.append(step.step_id)

    failures = list(report.failures) if report else []
    return OperationResult(
        operation=operation,
        success=not failures,
        restart_required=restart.required,
        ran_steps=ran,
        skipped_steps=skipped,
        failures=failures,
    )

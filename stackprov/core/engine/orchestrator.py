"""
Orchestrator — the central provisioning loop.

Takes a plan (list of Steps) and a RunContext, orders the steps by
their dependencies, runs them one at a time, checkpoints each success
in the ledger, and on the first failure unwinds what this run did.

Flow:
    validate DAG → order → for each step: skip? → snapshot (once) → run
    → ledger / outcome → on failure: undo in reverse → restore backup

Step failures never escape ``run()``: they become failed outcomes in
the RunReport.  Only a malformed plan raises (``PlanError``), and it
does so before anything executes.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Iterator

from stackprov.core.engine.dag import select_category, topological_order
from stackprov.core.errors import BackupError, RestoreError, StepExecutionError
from stackprov.core.models.context import RunContext
from stackprov.core.models.report import BackupRecord, RunReport, RunStatus
from stackprov.core.models.step import Step, StepOutcome
from stackprov.core.persistence.audit import AuditWriter, NullAuditWriter
from stackprov.core.persistence.backup import BackupManager
from stackprov.core.persistence.ledger import StateLedger

logger = logging.getLogger(__name__)


class RunInterrupted(KeyboardInterrupt):
    """SIGTERM received while a run was in progress."""


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"run-{now}-{uuid.uuid4().hex[:6]}"


@contextmanager
def _terminate_as_interrupt() -> Iterator[None]:
    """Route SIGTERM through the same path as Ctrl-C for the run's duration."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: object) -> None:
        raise RunInterrupted(f"signal {signum}")

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class Orchestrator:
    """Drive an ordered step list with checkpointing and rollback.

    Args:
        ledger: Completed-step record; in-memory when omitted.
        backup: Snapshot manager; no snapshot is taken when omitted.
        backup_paths: Paths archived before the first mutating step.
        audit: Audit trail for step, undo, and run entries.
    """

    def __init__(
        self,
        ledger: StateLedger | None = None,
        backup: BackupManager | None = None,
        backup_paths: list[str] | None = None,
        audit: AuditWriter | None = None,
    ):
        self.ledger = ledger if ledger is not None else StateLedger()
        self.backup = backup
        self.backup_paths = list(backup_paths or [])
        self.audit = audit or NullAuditWriter()

    # ── Planning ───────────────────────────────────────────────

    def plan(self, steps: list[Step], category: str | None = None) -> list[Step]:
        """Validate and order a plan, optionally narrowed to one category.

        Raises:
            PlanError: Cycle, duplicate, or unknown dependency id, or
                an unknown category.
        """
        ordered = topological_order(steps)
        if category:
            ordered = topological_order(select_category(ordered, category))
        return ordered

    # ── Execution ──────────────────────────────────────────────

    def run(
        self,
        steps: list[Step],
        ctx: RunContext,
        plan_name: str = "",
        run_id: str | None = None,
    ) -> RunReport:
        """Execute a plan and report every outcome in execution order."""
        ordered = self.plan(steps, ctx.category)

        report = RunReport(
            run_id=run_id or generate_run_id(),
            plan_name=plan_name,
            planned=[s.id for s in ordered],
        )

        if ctx.dry_run:
            report.status = RunStatus.ABORTED
            logger.info("Dry run: %d step(s) would run: %s", len(ordered), ", ".join(report.planned))
            self._audit_run(report)
            return report

        logger.info("Run %s: %d step(s)", report.run_id, len(ordered))
        completed: list[Step] = []
        snapshot_attempted = False
        current: Step | None = None
        failed = False

        with _terminate_as_interrupt():
            try:
                for step in ordered:
                    current = step
                    if self._should_skip(step, ctx):
                        self._record(report, StepOutcome.skip(step.id))
                        logger.info("⊘ %s (already done)", step.id)
                        continue

                    if step.mutating and not snapshot_attempted:
                        snapshot_attempted = True
                        report.backup = self._snapshot(report)

                    outcome = self._execute(step, ctx)
                    self._record(report, outcome)
                    if outcome.failed:
                        failed = True
                        break

                    completed.append(step)
                    self._checkpoint(report, step)
                current = None
            except KeyboardInterrupt:
                report.interrupted = True
                failed = True
                logger.error("Run interrupted")
                if current is not None and report.outcome_for(current.id) is None:
                    self._record(report, StepOutcome.failure(current.id, "interrupted"))

            if failed:
                report.status = RunStatus.FAILED
                if ctx.cleanup_on_error:
                    self._rollback(report, completed, ctx)
                else:
                    logger.warning("Cleanup on error disabled; leaving partial install in place")

        self._audit_run(report)
        return report

    def _should_skip(self, step: Step, ctx: RunContext) -> bool:
        return not ctx.force_rerun and step.idempotent and self.ledger.is_done(step.id)

    def _execute(self, step: Step, ctx: RunContext) -> StepOutcome:
        logger.info("→ %s %s", step.id, f"({step.description})" if step.description else "")
        start = time.monotonic()
        try:
            step.action(ctx)
        except StepExecutionError as e:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.error("✗ %s: %s", step.id, e.detail)
            return StepOutcome.failure(step.id, e.detail, duration_ms=elapsed)
        except Exception as e:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.error("✗ %s: %s", step.id, e, exc_info=logger.isEnabledFor(logging.DEBUG))
            return StepOutcome.failure(step.id, f"{type(e).__name__}: {e}", duration_ms=elapsed)

        elapsed = int((time.monotonic() - start) * 1000)
        logger.info("✓ %s (%dms)", step.id, elapsed)
        return StepOutcome.success(step.id, duration_ms=elapsed)

    def _checkpoint(self, report: RunReport, step: Step) -> None:
        # The in-memory entry is kept even when the file cannot be written
        try:
            self.ledger.mark_done(step.id)
        except OSError as e:
            if not any(w.startswith("Ledger not saved") for w in report.warnings):
                report.warnings.append(f"Ledger not saved: {e}")
                logger.warning("Cannot save ledger, progress will not survive this run: %s", e)
            self.audit.record("ledger", step.id, "failed", run_id=report.run_id, detail=str(e))

    def _record(self, report: RunReport, outcome: StepOutcome) -> None:
        report.outcomes.append(outcome)
        self.audit.record(
            "step",
            outcome.step_id,
            outcome.status.value,
            run_id=report.run_id,
            duration_ms=outcome.duration_ms,
            detail=outcome.error_detail or "",
        )

    # ── Backup / rollback ──────────────────────────────────────

    def _snapshot(self, report: RunReport) -> BackupRecord | None:
        if self.backup is None or not self.backup_paths:
            return None
        try:
            record = self.backup.snapshot(self.backup_paths)
        except BackupError as e:
            # snapshot failure never aborts the install
            logger.warning("Backup creation failed - continuing anyway: %s", e)
            report.warnings.append(str(e))
            self.audit.record("backup", ",".join(self.backup_paths), "failed",
                              run_id=report.run_id, detail=str(e))
            return None
        if record is not None:
            self.audit.record("backup", record.archive, "ok", run_id=report.run_id,
                              context={"paths": record.paths})
        return record

    def _rollback(self, report: RunReport, completed: list[Step], ctx: RunContext) -> None:
        """Undo this run's successful steps newest-first, then restore the snapshot.

        Errors are logged and collected; they never replace the
        original failure.
        """
        logger.warning("Rolling back %d completed step(s)", len(completed))
        for step in reversed(completed):
            if step.undo is None:
                continue
            try:
                step.undo(ctx)
            except KeyboardInterrupt:
                report.undo_errors[step.id] = "interrupted"
                logger.error("Undo of %s interrupted", step.id)
                self.audit.record("undo", step.id, "failed", run_id=report.run_id, detail="interrupted")
                continue
            except Exception as e:
                report.undo_errors[step.id] = str(e)
                logger.error("Undo of %s failed: %s", step.id, e)
                self.audit.record("undo", step.id, "failed", run_id=report.run_id, detail=str(e))
                continue
            report.rolled_back.append(step.id)
            logger.info("↺ %s undone", step.id)
            self.audit.record("undo", step.id, "ok", run_id=report.run_id)

        if report.backup is None or self.backup is None:
            return

        try:
            self.backup.restore(report.backup)
        except KeyboardInterrupt:
            report.restore_error = "interrupted"
            logger.error("Restore from %s interrupted, manual recovery required", report.backup.archive)
            self.audit.record("restore", report.backup.archive, "failed", run_id=report.run_id, detail="interrupted")
            return
        except RestoreError as e:
            report.restore_error = str(e)
            logger.error("Restore from %s failed: %s — manual recovery required", report.backup.archive, e)
            self.audit.record("restore", report.backup.archive, "failed", run_id=report.run_id, detail=str(e))
            return
        report.restored = True
        logger.info("Restored pre-install state from %s", report.backup.archive)
        self.audit.record("restore", report.backup.archive, "ok", run_id=report.run_id)

    def _audit_run(self, report: RunReport) -> None:
        self.audit.record(
            "run",
            report.plan_name,
            report.status.value,
            run_id=report.run_id,
            detail=report.error or "",
            context={
                "succeeded": len(report.succeeded),
                "failed": len(report.failed),
                "skipped": len(report.skipped),
                "not_attempted": len(report.not_attempted),
                "rolled_back": report.rolled_back,
                "interrupted": report.interrupted,
            },
        )

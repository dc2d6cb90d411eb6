"""
Tests for the orchestrator — ordering, skip logic, dry run, rollback.
"""

from pathlib import Path

import pytest

from stackprov.core.engine.orchestrator import Orchestrator, RunInterrupted, generate_run_id
from stackprov.core.errors import BackupError, PlanError, RestoreError, StepExecutionError
from stackprov.core.models.context import RunContext
from stackprov.core.models.report import RunStatus
from stackprov.core.models.step import Step, StepStatus
from stackprov.core.persistence.audit import AuditWriter
from stackprov.core.persistence.ledger import StateLedger


def _abc(journal, fail_b: bool = False, undo: bool = True):
    b_action = (
        journal.failing("B", StepExecutionError("B", "boom"))
        if fail_b else journal.action("B")
    )
    return [
        Step("A", journal.action("A"), undo=journal.undo("A") if undo else None),
        Step("B", b_action, ("A",), undo=journal.undo("B") if undo else None),
        Step("C", journal.action("C"), ("B",), undo=journal.undo("C") if undo else None),
    ]


# ── Happy path / resume ──────────────────────────────────────────────


class TestRunOrder:
    """Tests for ordering, skipping, and the ledger."""

    def test_chain_runs_in_dependency_order(self, journal):
        """A chain runs head to tail."""
        ledger = StateLedger()
        report = Orchestrator(ledger=ledger).run(_abc(journal), RunContext())

        assert report.status == RunStatus.COMPLETED
        assert journal.events == ["A", "B", "C"]
        assert [o.step_id for o in report.outcomes] == ["A", "B", "C"]
        assert all(o.status == StepStatus.SUCCESS for o in report.outcomes)
        assert ledger.all_done() == ["A", "B", "C"]

    def test_declaration_order_breaks_ties(self, journal):
        """Independent steps run in declaration order."""
        steps = [
            Step("root", journal.action("root")),
            Step("y", journal.action("y"), ("root",)),
            Step("x", journal.action("x"), ("root",)),
        ]
        Orchestrator().run(steps, RunContext())
        assert journal.events == ["root", "y", "x"]

    def test_dependency_declared_later_runs_first(self, journal):
        """Order follows dependencies, not position."""
        steps = [
            Step("B", journal.action("B"), ("A",)),
            Step("A", journal.action("A")),
        ]
        Orchestrator().run(steps, RunContext())
        assert journal.events == ["A", "B"]

    def test_second_run_skips_done_steps(self, journal):
        """Idempotent steps already in the ledger are skipped."""
        ledger = StateLedger()
        orch = Orchestrator(ledger=ledger)
        orch.run(_abc(journal), RunContext())
        journal.events.clear()

        report = orch.run(_abc(journal), RunContext())

        assert journal.events == []
        assert report.status == RunStatus.COMPLETED
        assert report.skipped == ["A", "B", "C"]

    def test_force_rerun_executes_done_steps(self, journal):
        """force_rerun ignores the ledger."""
        ledger = StateLedger()
        ledger.mark_done("A")
        report = Orchestrator(ledger=ledger).run(_abc(journal), RunContext(force_rerun=True))
        assert journal.events == ["A", "B", "C"]
        assert report.skipped == []

    def test_non_idempotent_step_reruns_even_when_done(self, journal):
        """Non-idempotent steps always run."""
        ledger = StateLedger()
        ledger.mark_done("check")
        steps = [Step("check", journal.action("check"), idempotent=False)]
        report = Orchestrator(ledger=ledger).run(steps, RunContext())
        assert journal.events == ["check"]
        assert report.succeeded == ["check"]

    def test_resume_after_failure_skips_completed(self, journal):
        """A rerun picks up at the failed step."""
        ledger = StateLedger()
        orch = Orchestrator(ledger=ledger)
        orch.run(_abc(journal, fail_b=True), RunContext(cleanup_on_error=False))
        journal.events.clear()

        report = orch.run(_abc(journal), RunContext())

        assert journal.events == ["B", "C"]
        assert report.skipped == ["A"]
        assert report.status == RunStatus.COMPLETED

    def test_run_id_generated(self, journal):
        report = Orchestrator().run(_abc(journal), RunContext())
        assert report.run_id.startswith("run-")

    def test_generate_run_id_unique(self):
        assert generate_run_id() != generate_run_id()

    def test_ledger_persisted_to_file(self, journal, tmp_state_dir: Path):
        """Completed steps are saved as they finish."""
        path = tmp_state_dir / "ledger.json"
        Orchestrator(ledger=StateLedger.load(path)).run(_abc(journal), RunContext())
        assert StateLedger.load(path).all_done() == ["A", "B", "C"]

    def test_unwritable_ledger_is_a_warning(self, journal, tmp_path: Path):
        """A ledger that cannot be saved warns once and the run goes on."""
        blocker = tmp_path / "state"
        blocker.write_text("not a directory")
        ledger = StateLedger(path=blocker / "ledger.json")

        report = Orchestrator(ledger=ledger).run(_abc(journal), RunContext())

        assert report.status == RunStatus.COMPLETED
        assert journal.events == ["A", "B", "C"]
        assert len(report.warnings) == 1
        assert report.warnings[0].startswith("Ledger not saved")
        assert ledger.all_done() == ["A", "B", "C"]


# ── Failures and rollback ────────────────────────────────────────────


class TestFailure:
    """Tests for failure handling and rollback."""

    def test_failure_stops_run_and_rolls_back(self, journal):
        """Steps after a failure never run; earlier ones are undone."""
        ledger = StateLedger()
        report = Orchestrator(ledger=ledger).run(_abc(journal, fail_b=True), RunContext())

        assert report.status == RunStatus.FAILED
        assert report.succeeded == ["A"]
        assert report.failed == ["B"]
        assert report.not_attempted == ["C"]
        assert report.error == "boom"
        assert journal.events == ["A", "B", "undo:A"]
        assert report.rolled_back == ["A"]
        # rollback does not unmark
        assert ledger.is_done("A")
        assert not ledger.is_done("B")

    def test_undo_runs_newest_first(self, journal):
        """Rollback undoes in reverse completion order."""
        steps = [
            Step("A", journal.action("A"), undo=journal.undo("A")),
            Step("B", journal.action("B"), ("A",), undo=journal.undo("B")),
            Step("C", journal.action("C"), ("B",), undo=journal.undo("C")),
            Step("D", journal.failing("D", RuntimeError("nope")), ("C",)),
        ]
        report = Orchestrator().run(steps, RunContext())
        assert journal.events[-3:] == ["undo:C", "undo:B", "undo:A"]
        assert report.rolled_back == ["C", "B", "A"]
        assert report.surviving == []

    def test_steps_without_undo_survive(self, journal):
        """Steps without undo are left as they are."""
        steps = [
            Step("A", journal.action("A")),
            Step("B", journal.action("B"), ("A",), undo=journal.undo("B")),
            Step("C", journal.failing("C", RuntimeError("x")), ("B",)),
        ]
        report = Orchestrator().run(steps, RunContext())
        assert report.rolled_back == ["B"]
        assert report.surviving == ["A"]

    def test_skipped_steps_are_not_undone(self, journal):
        """Only steps run this time are rolled back."""
        ledger = StateLedger()
        ledger.mark_done("A")
        report = Orchestrator(ledger=ledger).run(_abc(journal, fail_b=True), RunContext())
        assert "undo:A" not in journal.events
        assert report.skipped == ["A"]

    def test_undo_error_collected_and_rollback_continues(self, journal):
        """A failing undo is recorded and the rest still run."""
        def broken_undo(ctx):
            raise OSError("disk gone")

        steps = [
            Step("A", journal.action("A"), undo=journal.undo("A")),
            Step("B", journal.action("B"), ("A",), undo=broken_undo),
            Step("C", journal.failing("C", StepExecutionError("C", "bad")), ("B",)),
        ]
        report = Orchestrator().run(steps, RunContext())

        assert report.undo_errors == {"B": "disk gone"}
        assert report.rolled_back == ["A"]
        assert report.error == "bad"

    def test_unexpected_exception_becomes_failed_outcome(self, journal):
        """Any exception from a step is a Failed outcome."""
        steps = [Step("A", journal.failing("A", ValueError("bad value")))]
        report = Orchestrator().run(steps, RunContext())
        outcome = report.outcome_for("A")
        assert outcome.status == StepStatus.FAILED
        assert "ValueError: bad value" in outcome.error_detail

    def test_no_cleanup_on_error_leaves_everything(self, journal):
        """cleanup_on_error=False skips rollback."""
        report = Orchestrator().run(_abc(journal, fail_b=True), RunContext(cleanup_on_error=False))
        assert report.status == RunStatus.FAILED
        assert report.rolled_back == []
        assert "undo:A" not in journal.events

    def test_keyboard_interrupt_rolls_back(self, journal):
        """Ctrl-C rolls back and marks the report interrupted."""
        steps = [
            Step("A", journal.action("A"), undo=journal.undo("A")),
            Step("B", journal.failing("B", KeyboardInterrupt()), ("A",)),
            Step("C", journal.action("C"), ("B",)),
        ]
        report = Orchestrator().run(steps, RunContext())
        assert report.interrupted
        assert report.status == RunStatus.FAILED
        assert report.outcome_for("B").error_detail == "interrupted"
        assert report.not_attempted == ["C"]
        assert journal.events[-1] == "undo:A"

    def test_interrupt_during_undo_is_recorded(self, journal):
        """A second Ctrl-C inside an undo is logged and rollback continues."""
        def interrupted_undo(ctx):
            raise KeyboardInterrupt

        steps = [
            Step("A", journal.action("A"), undo=journal.undo("A")),
            Step("B", journal.action("B"), ("A",), undo=interrupted_undo),
            Step("C", journal.failing("C", RuntimeError("x")), ("B",)),
        ]
        report = Orchestrator().run(steps, RunContext())
        assert report.undo_errors == {"B": "interrupted"}
        assert report.rolled_back == ["A"]

    def test_sigterm_style_interrupt(self, journal):
        """RunInterrupted is handled like Ctrl-C."""
        steps = [Step("A", journal.failing("A", RunInterrupted("signal 15")))]
        report = Orchestrator().run(steps, RunContext())
        assert report.interrupted


# ── Dry run / invalid plans ──────────────────────────────────────────


class TestDryRun:
    """Tests for dry runs and plan validation."""

    def test_dry_run_executes_nothing(self, journal, make_backup):
        """Dry run calls no step and takes no snapshot."""
        ledger = StateLedger()
        backup = make_backup()
        orch = Orchestrator(ledger=ledger, backup=backup, backup_paths=["/opt/x"])

        report = orch.run(_abc(journal), RunContext(dry_run=True))

        assert report.status == RunStatus.ABORTED
        assert report.planned == ["A", "B", "C"]
        assert report.outcomes == []
        assert journal.events == []
        assert backup.snapshots == []
        assert len(ledger) == 0

    def test_dry_run_lists_done_steps_too(self, journal):
        """Dry run lists steps regardless of the ledger."""
        ledger = StateLedger()
        ledger.mark_done("A")
        report = Orchestrator(ledger=ledger).run(_abc(journal), RunContext(dry_run=True))
        assert report.planned == ["A", "B", "C"]

    def test_cycle_raises_before_any_side_effect(self, journal, make_backup):
        """An invalid plan fails before anything runs."""
        ledger = StateLedger()
        backup = make_backup()
        steps = [
            Step("A", journal.action("A"), ("C",)),
            Step("B", journal.action("B"), ("A",)),
            Step("C", journal.action("C"), ("B",)),
        ]
        with pytest.raises(PlanError, match="cycle"):
            Orchestrator(ledger=ledger, backup=backup, backup_paths=["/x"]).run(steps, RunContext())
        assert journal.events == []
        assert backup.snapshots == []
        assert len(ledger) == 0

    def test_unknown_dependency_raises(self, journal):
        steps = [Step("A", journal.action("A"), ("ghost",))]
        with pytest.raises(PlanError, match="ghost"):
            Orchestrator().run(steps, RunContext(dry_run=True))

    def test_category_selection_pulls_dependencies(self, journal):
        """A category run includes its dependencies."""
        steps = [
            Step("base", journal.action("base"), category="system"),
            Step("other", journal.action("other"), ("base",), category="docker"),
            Step("svc", journal.action("svc"), ("base",), category="runtime"),
        ]
        report = Orchestrator().run(steps, RunContext(category="runtime"))
        assert journal.events == ["base", "svc"]
        assert report.planned == ["base", "svc"]

    def test_unknown_category_raises(self, journal):
        with pytest.raises(PlanError, match="Unknown category"):
            Orchestrator().plan(_abc(journal), "nope")


# ── Backup integration ───────────────────────────────────────────────


class TestBackup:
    """Tests for snapshot and restore around a run."""

    def test_snapshot_once_before_first_mutating_step(self, journal, make_backup):
        """One snapshot, taken just before the first mutating step."""
        backup = make_backup()
        events = journal.events

        def check(ctx):
            events.append(f"check(snapshots={len(backup.snapshots)})")

        steps = [
            Step("check", check, mutating=False),
            *_abc(journal),
        ]
        report = Orchestrator(backup=backup, backup_paths=["/opt/x"]).run(steps, RunContext())

        assert events[0] == "check(snapshots=0)"
        assert backup.snapshots == [["/opt/x"]]
        assert report.backup is not None

    def test_no_snapshot_when_everything_skipped(self, journal, make_backup):
        """Nothing to run means no snapshot."""
        ledger = StateLedger()
        for sid in ("A", "B", "C"):
            ledger.mark_done(sid)
        backup = make_backup()
        Orchestrator(ledger=ledger, backup=backup, backup_paths=["/opt/x"]).run(_abc(journal), RunContext())
        assert backup.snapshots == []

    def test_backup_failure_is_a_warning(self, journal, make_backup):
        """A failed snapshot warns and the run continues."""
        backup = make_backup(snapshot_error=BackupError("no space"))
        report = Orchestrator(backup=backup, backup_paths=["/opt/x"]).run(_abc(journal), RunContext())
        assert report.status == RunStatus.COMPLETED
        assert report.backup is None
        assert report.warnings == ["no space"]

    def test_failure_restores_snapshot(self, journal, make_backup):
        """A failed run restores the snapshot after undo."""
        backup = make_backup()
        report = Orchestrator(backup=backup, backup_paths=["/opt/x"]).run(
            _abc(journal, fail_b=True), RunContext(),
        )
        assert backup.restores == [report.backup]
        assert report.restored

    def test_restore_error_recorded(self, journal, make_backup):
        """A failed restore is kept on the report."""
        backup = make_backup(restore_error=RestoreError("corrupt archive"))
        report = Orchestrator(backup=backup, backup_paths=["/opt/x"]).run(
            _abc(journal, fail_b=True), RunContext(),
        )
        assert not report.restored
        assert report.restore_error == "corrupt archive"
        assert report.error == "boom"

    def test_interrupt_during_restore_is_recorded(self, journal, make_backup):
        """Ctrl-C while restoring ends the run instead of escaping it."""
        backup = make_backup(restore_error=RunInterrupted("signal 15"))
        report = Orchestrator(backup=backup, backup_paths=["/opt/x"]).run(
            _abc(journal, fail_b=True), RunContext(),
        )
        assert report.status == RunStatus.FAILED
        assert not report.restored
        assert report.restore_error == "interrupted"
        assert report.rolled_back == ["A"]

    def test_no_restore_without_cleanup(self, journal, make_backup):
        """No cleanup means no restore."""
        backup = make_backup()
        Orchestrator(backup=backup, backup_paths=["/opt/x"]).run(
            _abc(journal, fail_b=True), RunContext(cleanup_on_error=False),
        )
        assert backup.restores == []


# ── Audit trail ──────────────────────────────────────────────────────


class TestOrchestratorAudit:
    """Tests for audit entries written by a run."""

    def test_steps_undo_and_run_audited(self, journal, tmp_state_dir: Path):
        """Steps, undo actions and the run summary are audited."""
        audit = AuditWriter(state_dir=tmp_state_dir)
        report = Orchestrator(audit=audit).run(_abc(journal, fail_b=True), RunContext(), plan_name="demo")

        entries = audit.read_all()
        steps = [(e.subject, e.status) for e in entries if e.event == "step"]
        assert steps == [("A", "success"), ("B", "failed")]
        undos = [(e.subject, e.status) for e in entries if e.event == "undo"]
        assert undos == [("A", "ok")]
        run = [e for e in entries if e.event == "run"][-1]
        assert run.subject == "demo"
        assert run.status == "failed"
        assert run.run_id == report.run_id
        assert run.context["not_attempted"] == 1

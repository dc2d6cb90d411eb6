"""
Tests for CLI commands — run, plan, plans, ledger, audit, diagnose.

Runs use small registered plans made of pure-Python steps so nothing
touches the host; state goes to a temporary directory.
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from stackprov.core.errors import StepExecutionError
from stackprov.core.models.findings import ProblemRegistry, ServiceDown
from stackprov.core.models.step import Step
from stackprov.core.plans import PLANS, register_plan
from stackprov.main import cli


def _ok(ctx):
    pass


def _fail(ctx):
    raise StepExecutionError("broken", "exit 1")


def _interrupt(ctx):
    raise KeyboardInterrupt


def _chain(last):
    def build(settings, runner, health, skip_validation=False):
        return [
            Step("first", _ok, category="system"),
            Step("second", _ok, ("first",), category="runtime"),
            Step("last", last, ("second",), category="runtime"),
        ]
    return build


def _cycle(settings, runner, health, skip_validation=False):
    return [Step("a", _ok, ("b",)), Step("b", _ok, ("a",))]


@pytest.fixture(autouse=True)
def registered_plans():
    register_plan("t-ok", "all steps pass", _chain(_ok))
    register_plan("t-fail", "last step fails", _chain(_fail))
    register_plan("t-int", "last step interrupted", _chain(_interrupt))
    register_plan("t-cycle", "invalid graph", _cycle)
    yield
    for name in ("t-ok", "t-fail", "t-int", "t-cycle"):
        PLANS.pop(name, None)


@pytest.fixture
def config(tmp_path: Path, monkeypatch) -> Path:
    state = tmp_path / "state"
    monkeypatch.setenv("STACKPROV_STATE_DIR", str(state))
    path = tmp_path / "provision.yml"
    path.write_text(
        f"install_dir: {tmp_path / 'opt'}\n"
        f"backup_dir: {tmp_path / 'backups'}\n"
        f"log_dir: {tmp_path / 'log'}\n"
        "backup_paths: []\n"
    )
    return path


def _invoke(config: Path, *args: str):
    return CliRunner().invoke(cli, ["--config", str(config), *args])


class TestCLIGlobal:
    """Tests for the command group."""

    def test_help(self):
        """Help lists every sub-command."""
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Stack Provisioner" in result.output
        for command in ("run", "plan", "plans", "diagnose", "ledger", "audit"):
            assert command in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_bad_config_exits_2(self, tmp_path: Path):
        """Invalid config exits with code 2."""
        bad = tmp_path / "provision.yml"
        bad.write_text("retry: [oops\n")
        result = CliRunner().invoke(cli, ["--config", str(bad), "plan", "t-ok"])
        assert result.exit_code == 2


class TestPlanCommands:
    """Tests for plans and plan."""

    def test_plans_lists_builtin(self):
        result = CliRunner().invoke(cli, ["plans"])
        assert result.exit_code == 0
        assert "ai-stack" in result.output
        assert "verify" in result.output

    def test_plan_shows_order(self, config):
        """plan prints steps in execution order."""
        result = _invoke(config, "plan", "ai-stack")
        assert result.exit_code == 0
        assert "preflight" in result.output
        assert result.output.index("runtime_install") < result.output.index("runtime_service")

    def test_plan_json_category(self, config):
        """--category narrows the JSON order."""
        result = _invoke(config, "plan", "ai-stack", "--category", "model", "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        ids = [s["id"] for s in data["steps"]]
        assert ids[-1] == "model_pull"
        assert "agent_clone" not in ids

    def test_plan_unknown(self, config):
        """An unknown plan exits 2."""
        result = _invoke(config, "plan", "nope")
        assert result.exit_code == 2

    def test_plan_unknown_category(self, config):
        """An unknown category exits 2."""
        result = _invoke(config, "plan", "t-ok", "--category", "gpu")
        assert result.exit_code == 2


class TestRunCommand:
    """Tests for run exit codes and output."""

    def test_dry_run_exits_3(self, config):
        """Dry run exits 3 and runs nothing."""
        result = _invoke(config, "run", "ai-stack", "--dry-run")
        assert result.exit_code == 3
        assert "would run" in result.output
        assert "agent_service" in result.output

    def test_success_and_resume(self, config):
        """A second run skips completed steps."""
        result = _invoke(config, "run", "t-ok")
        assert result.exit_code == 0, result.output
        assert "completed" in result.output

        result = _invoke(config, "run", "t-ok", "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["skipped"] == ["first", "second", "last"]

    def test_force(self, config):
        """--force reruns completed steps."""
        _invoke(config, "run", "t-ok")
        result = _invoke(config, "run", "t-ok", "--force", "--json")
        assert json.loads(result.stdout)["succeeded"] == ["first", "second", "last"]

    def test_failure_exits_1(self, config):
        """A failed run exits 1."""
        result = _invoke(config, "run", "t-fail", "--json")
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["status"] == "failed"
        assert data["failed"] == ["last"]
        assert data["succeeded"] == ["first", "second"]

    def test_failure_pretty_output(self, config):
        result = _invoke(config, "run", "t-fail")
        assert result.exit_code == 1
        assert "exit 1" in result.output

    def test_category(self, config):
        result = _invoke(config, "run", "t-ok", "--category", "system", "--json")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["planned"] == ["first"]

    def test_interrupt_exits_130(self, config):
        """An interrupted run exits 130."""
        result = _invoke(config, "run", "t-int")
        assert result.exit_code == 130

    def test_cycle_exits_2(self, config):
        """An invalid plan exits 2."""
        result = _invoke(config, "run", "t-cycle")
        assert result.exit_code == 2
        assert "cycle" in result.output

    def test_unknown_plan_exits_2(self, config):
        result = _invoke(config, "run", "missing-plan")
        assert result.exit_code == 2


class TestLedgerCommands:
    """Tests for ledger and audit."""

    def test_show_empty(self, config):
        result = _invoke(config, "ledger", "show")
        assert result.exit_code == 0
        assert "No completed steps" in result.output

    def test_show_after_run(self, config):
        """Completed steps appear after a run."""
        _invoke(config, "run", "t-ok")
        result = _invoke(config, "ledger", "show", "--json")
        data = json.loads(result.stdout)
        assert [e["step_id"] for e in data["entries"]] == ["first", "second", "last"]

    def test_reset_one_step(self, config):
        """--step unmarks only that step."""
        _invoke(config, "run", "t-ok")
        result = _invoke(config, "ledger", "reset", "--step", "last")
        assert result.exit_code == 0

        data = json.loads(_invoke(config, "run", "t-ok", "--json").stdout)
        assert data["succeeded"] == ["last"]

    def test_reset_unknown_step(self, config):
        """Unmarking an unknown step fails."""
        result = _invoke(config, "ledger", "reset", "--step", "ghost")
        assert result.exit_code == 1

    def test_reset_all(self, config):
        _invoke(config, "run", "t-ok")
        result = _invoke(config, "ledger", "reset", "--yes")
        assert result.exit_code == 0
        assert "No completed steps" in _invoke(config, "ledger", "show").output

    def test_audit(self, config):
        """audit shows entries from the last run."""
        _invoke(config, "run", "t-fail")
        result = _invoke(config, "audit", "--json")
        assert result.exit_code == 0
        events = [e["event"] for e in json.loads(result.stdout)]
        assert "step" in events
        assert events[-1] == "run"


class TestDiagnoseCommand:
    """Tests for diagnose with faked checks."""

    @pytest.fixture(autouse=True)
    def _no_host_access(self, monkeypatch):
        from stackprov.core.detection import environment
        from stackprov.core.models.context import EnvironmentFacts

        monkeypatch.setattr(environment, "gather_facts", lambda *a, **kw: EnvironmentFacts())

    def test_healthy(self, config, monkeypatch):
        """A clean host exits 0."""
        from stackprov.core.detection import diagnostics

        monkeypatch.setattr(diagnostics, "run_diagnostics", lambda *a, **kw: ProblemRegistry())
        result = _invoke(config, "diagnose")
        assert result.exit_code == 0
        assert "No issues" in result.output

    def test_findings_exit_1(self, config, monkeypatch):
        """Any finding exits 1 in text and JSON."""
        from stackprov.core.detection import diagnostics

        reg = ProblemRegistry()
        reg.add("services", ServiceDown(service="ollama", state="inactive"))
        monkeypatch.setattr(diagnostics, "run_diagnostics", lambda *a, **kw: reg)

        result = _invoke(config, "diagnose")
        assert result.exit_code == 1
        assert "ollama service is not running" in result.output

        result = _invoke(config, "diagnose", "--json")
        assert result.exit_code == 1
        assert json.loads(result.stdout)["total"] == 1

    def test_fix_then_recheck(self, config, monkeypatch):
        """--fix hands findings to the fixers and exits on what is left."""
        from stackprov.core.detection import diagnostics, remediation
        from stackprov.core.models.findings import FixResult

        before = ProblemRegistry()
        before.add("services", ServiceDown(service="ollama", state="inactive", enabled=True))
        passes = iter([before, ProblemRegistry()])
        monkeypatch.setattr(diagnostics, "run_diagnostics", lambda *a, **kw: next(passes))

        seen = []

        def fake_apply(registry, settings, runner, audit=None, plan=None):
            seen.append(registry.total)
            return [FixResult(kind="service_down", target="ollama", action="start", applied=True)]

        monkeypatch.setattr(remediation, "apply_fixes", fake_apply)

        result = _invoke(config, "diagnose", "--fix")
        assert result.exit_code == 0
        assert seen == [1]
        assert "1 of 1 issue(s) fixed" in result.output
        assert "No issues" in result.output

    def test_fix_json_reports_remaining(self, config, monkeypatch):
        """JSON shows fixes and the findings left after them."""
        from stackprov.core.detection import diagnostics, remediation
        from stackprov.core.models.findings import FixResult

        left = ProblemRegistry()
        left.add("services", ServiceDown(service="agent0", state="not-found"))
        monkeypatch.setattr(diagnostics, "run_diagnostics", lambda *a, **kw: left.model_copy(deep=True))
        monkeypatch.setattr(
            remediation, "apply_fixes",
            lambda *a, **kw: [FixResult(kind="service_down", target="agent0", action="install")],
        )

        result = _invoke(config, "diagnose", "--fix", "--json")
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["total"] == 1
        assert data["fixed"] == 0
        assert data["fixes"][0]["action"] == "install"

    def test_save_report(self, config, tmp_path, monkeypatch):
        """--save-report writes a JSON report under the log directory."""
        from stackprov.core.detection import diagnostics

        monkeypatch.setattr(diagnostics, "run_diagnostics", lambda *a, **kw: ProblemRegistry())
        result = _invoke(config, "diagnose", "--save-report")
        assert result.exit_code == 0
        reports = list((tmp_path / "log").glob("diagnostic-report-*.json"))
        assert len(reports) == 1
        assert str(reports[0]) in result.output

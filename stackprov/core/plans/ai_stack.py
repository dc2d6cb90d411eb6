"""
The ``ai-stack`` plan — model runtime (Ollama) + agent web UI.

Step order (dependencies in brackets):

    preflight
    system_packages [preflight] → service_user → directories
    docker_install [system_packages] → docker_service [service_user]
    gpu_toolkit [system_packages]                  (no-op without a GPU)
    runtime_install [system_packages] → runtime_service → model_pull
    agent_clone [directories] → agent_env → agent_config → agent_service
    validate [agent_service, model_pull]

Every step is safe to re-run.  Undo actions remove what a step
created; shared system pieces (packages, Docker, the service user)
are deliberately left in place.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from pathlib import Path

from stackprov.adapters.probes import command_probe, http_probe
from stackprov.adapters.shell.command import CommandRunner, require_ok
from stackprov.core.detection.diagnostics import parse_model_list
from stackprov.core.detection.environment import check_requirements
from stackprov.core.engine.health import HealthChecker
from stackprov.core.errors import StepExecutionError
from stackprov.core.models.context import RunContext
from stackprov.core.models.settings import Settings
from stackprov.core.models.step import Step

logger = logging.getLogger(__name__)

DOCKER_INSTALL_SCRIPT = "https://get.docker.com"
OLLAMA_INSTALL_SCRIPT = "https://ollama.com/install.sh"

RUNTIME_UNIT = """\
[Unit]
Description=Ollama model runtime
After=network-online.target

[Service]
ExecStart={binary} serve
User={user}
Group={user}
Restart=always
RestartSec=3
Environment="OLLAMA_HOST=0.0.0.0:{port}"

[Install]
WantedBy=multi-user.target
"""

AGENT_UNIT = """\
[Unit]
Description=Agent web UI
After=network-online.target {runtime}.service
Requires={runtime}.service

[Service]
Type=simple
User={user}
Group={user}
WorkingDirectory={workdir}
EnvironmentFile={env_file}
ExecStart={launcher}
Restart=always
RestartSec=10

[Install]
WantedBy=multi-user.target
"""

AGENT_ENV = """\
# Generated by stackprov
OLLAMA_BASE_URL=http://localhost:{runtime_port}
CHAT_MODEL_PROVIDER=ollama
CHAT_MODEL_NAME={model}
UTILITY_MODEL_PROVIDER=ollama
UTILITY_MODEL_NAME={model}
WEB_UI_PORT={agent_port}
WEB_UI_HOST=0.0.0.0
"""

LAUNCHER = """\
#!/bin/bash
set -euo pipefail
cd "{workdir}"
exec "{venv}/bin/python" run_ui.py --host 0.0.0.0 --port {agent_port}
"""


def write_file(path: Path, content: str, mode: int = 0o644) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(mode)
    logger.info("Wrote %s", path)


class AiStackPlan:
    """Builds the Steps for installing the stack on one host."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        health: HealthChecker,
        skip_validation: bool = False,
    ):
        self.settings = settings
        self.runner = runner
        self.health = health
        self.skip_validation = skip_validation

    # ── Paths ──────────────────────────────────────────────────

    @property
    def agent_dir(self) -> Path:
        return Path(self.settings.install_dir) / "agent-zero"

    @property
    def venv_dir(self) -> Path:
        return Path(self.settings.install_dir) / "venv"

    @property
    def env_file(self) -> Path:
        return Path(self.settings.config_dir) / f"{self.settings.agent_service}.env"

    @property
    def launcher(self) -> Path:
        return Path(self.settings.install_dir) / f"launch_{self.settings.agent_service}.sh"

    def unit_path(self, service: str) -> Path:
        return Path(self.settings.systemd_dir) / f"{service}.service"

    # ── Generated files ────────────────────────────────────────

    def write_runtime_unit(self) -> Path:
        s = self.settings
        binary = shutil.which("ollama") or "/usr/local/bin/ollama"
        path = self.unit_path(s.runtime_service)
        write_file(path, RUNTIME_UNIT.format(binary=binary, user=s.runtime_user, port=s.runtime_port))
        return path

    def write_agent_unit(self) -> Path:
        s = self.settings
        path = self.unit_path(s.agent_service)
        write_file(
            path,
            AGENT_UNIT.format(
                runtime=s.runtime_service,
                user=s.service_user,
                workdir=self.agent_dir,
                env_file=self.env_file,
                launcher=self.launcher,
            ),
        )
        return path

    def write_env_file(self) -> Path:
        s = self.settings
        write_file(
            self.env_file,
            AGENT_ENV.format(runtime_port=s.runtime_port, model=s.model, agent_port=s.agent_port),
            mode=0o640,
        )
        return self.env_file

    def write_launcher(self) -> Path:
        write_file(
            self.launcher,
            LAUNCHER.format(workdir=self.agent_dir, venv=self.venv_dir, agent_port=self.settings.agent_port),
            mode=0o755,
        )
        return self.launcher

    def writers(self) -> dict[Path, Callable[[], Path]]:
        """Generated file path → the method that regenerates it."""
        return {
            self.unit_path(self.settings.runtime_service): self.write_runtime_unit,
            self.unit_path(self.settings.agent_service): self.write_agent_unit,
            self.env_file: self.write_env_file,
            self.launcher: self.write_launcher,
        }

    # ── Helpers ────────────────────────────────────────────────

    def _run(self, step_id: str, command, retries: int | None = None, **kwargs):
        if retries is None:
            retries = self.settings.retry.attempts
        return require_ok(
            self.runner.execute(command, timeout=self.settings.command_timeout, retries=retries, **kwargs),
            step_id,
        )

    def _wait(self, step_id: str, probe, what: str, timeout: float | None = None) -> None:
        ready = self.health.wait_until_ready(
            probe,
            timeout=timeout or self.settings.health.timeout,
            poll_interval=self.settings.health.poll_interval,
            name=what,
        )
        if not ready:
            raise StepExecutionError(step_id, f"{what} did not become ready")

    def _enable_service(self, step_id: str, service: str) -> None:
        self._run(step_id, ["systemctl", "daemon-reload"], retries=1)
        self._run(step_id, ["systemctl", "enable", "--now", service], retries=1)

    def _remove_service(self, service: str) -> None:
        self.runner.execute(["systemctl", "disable", "--now", service], timeout=60, retries=1)
        self.unit_path(service).unlink(missing_ok=True)
        self.runner.execute(["systemctl", "daemon-reload"], timeout=60, retries=1)

    # ── Step bodies ────────────────────────────────────────────

    def preflight(self, ctx: RunContext) -> None:
        findings = check_requirements(ctx.facts, self.settings.requirements)
        for f in findings:
            logger.warning(f.summary)
        if findings and not self.skip_validation:
            raise StepExecutionError(
                "preflight",
                "System requirements not met: " + "; ".join(f.summary for f in findings),
            )

    def system_packages(self, ctx: RunContext) -> None:
        env = {"DEBIAN_FRONTEND": "noninteractive"}
        self._run("system_packages", ["apt-get", "update", "-y"], env=env)
        self._run(
            "system_packages",
            ["apt-get", "install", "-y", "--no-install-recommends", *self.settings.system_packages],
            env=env,
        )

    def service_user(self, ctx: RunContext) -> None:
        user = self.settings.service_user
        if self.runner.execute(["id", "-u", user], timeout=10, retries=1).ok:
            logger.info("Service user %s already exists", user)
            return
        self._run("service_user", ["useradd", "--system", "--create-home", "--shell", "/bin/bash", user], retries=1)

    def directories(self, ctx: RunContext) -> None:
        s = self.settings
        for target in s.ownership_targets():
            Path(target.path).mkdir(parents=True, exist_ok=True)
            self._run("directories", ["chown", f"{target.owner}:{target.group}", target.path], retries=1)

    def docker_install(self, ctx: RunContext) -> None:
        if shutil.which("docker") and self.runner.execute(["docker", "--version"], timeout=30, retries=1).ok:
            logger.info("Docker already installed")
            return
        self._run("docker_install", ["curl", "-fsSL", DOCKER_INSTALL_SCRIPT, "-o", "/tmp/get-docker.sh"])
        self._run("docker_install", ["sh", "/tmp/get-docker.sh"])

    def docker_service(self, ctx: RunContext) -> None:
        self._run("docker_service", ["systemctl", "enable", "--now", "docker"], retries=1)
        self._wait("docker_service", command_probe(["docker", "ps"], self.runner), "docker", timeout=30)
        self._run("docker_service", ["usermod", "-aG", "docker", self.settings.service_user], retries=1)

    def gpu_toolkit(self, ctx: RunContext) -> None:
        if not ctx.facts.gpu_present:
            logger.info("Skipping CUDA toolkit (no working NVIDIA GPU)")
            return
        if shutil.which("nvcc"):
            logger.info("CUDA toolkit already installed")
            return
        self._run(
            "gpu_toolkit",
            ["apt-get", "install", "-y", "nvidia-cuda-toolkit"],
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )

    def runtime_install(self, ctx: RunContext) -> None:
        if shutil.which("ollama"):
            logger.info("Ollama already installed")
            return
        self._run("runtime_install", f"curl -fsSL {OLLAMA_INSTALL_SCRIPT} | sh")

    def runtime_service(self, ctx: RunContext) -> None:
        s = self.settings
        self.write_runtime_unit()
        self._enable_service("runtime_service", s.runtime_service)
        self._wait("runtime_service", http_probe(f"{s.runtime_url}/api/tags"), f"{s.runtime_service} API")

    def undo_runtime_service(self, ctx: RunContext) -> None:
        self._remove_service(self.settings.runtime_service)

    def model_pull(self, ctx: RunContext) -> None:
        s = self.settings
        listed = self.runner.execute(["ollama", "list"], timeout=30, retries=1)
        if listed.ok and s.model in parse_model_list(listed.stdout):
            logger.info("Model %s already present", s.model)
            return
        self._run("model_pull", ["ollama", "pull", s.model])

    def agent_clone(self, ctx: RunContext) -> None:
        s = self.settings
        if (self.agent_dir / ".git").is_dir():
            self._run("agent_clone", ["git", "-C", str(self.agent_dir), "pull", "--ff-only"])
        else:
            self._run(
                "agent_clone",
                ["git", "clone", "--depth", "1", "--branch", s.agent_branch, s.agent_repo, str(self.agent_dir)],
            )
        self._run("agent_clone", ["chown", "-R", f"{s.service_user}:{s.service_user}", str(self.agent_dir)], retries=1)

    def undo_agent_clone(self, ctx: RunContext) -> None:
        if self.agent_dir.exists():
            shutil.rmtree(self.agent_dir)

    def agent_env(self, ctx: RunContext) -> None:
        if not (self.venv_dir / "bin" / "python").exists():
            self._run("agent_env", ["python3", "-m", "venv", str(self.venv_dir)], retries=1)
        pip = str(self.venv_dir / "bin" / "pip")
        self._run("agent_env", [pip, "install", "--upgrade", "pip"])
        self._run("agent_env", [pip, "install", "-r", str(self.agent_dir / "requirements.txt")])

    def undo_agent_env(self, ctx: RunContext) -> None:
        if self.venv_dir.exists():
            shutil.rmtree(self.venv_dir)

    def agent_config(self, ctx: RunContext) -> None:
        self.write_env_file()
        self.write_launcher()

    def undo_agent_config(self, ctx: RunContext) -> None:
        self.env_file.unlink(missing_ok=True)
        self.launcher.unlink(missing_ok=True)

    def agent_service(self, ctx: RunContext) -> None:
        s = self.settings
        self.write_agent_unit()
        self._enable_service("agent_service", s.agent_service)
        self._wait("agent_service", http_probe(s.agent_url), f"{s.agent_service} web UI")

    def undo_agent_service(self, ctx: RunContext) -> None:
        self._remove_service(self.settings.agent_service)

    def validate(self, ctx: RunContext) -> None:
        s = self.settings
        problems = []
        if not http_probe(f"{s.runtime_url}/api/tags")():
            problems.append(f"{s.runtime_service} API not responding")
        if not http_probe(s.agent_url)():
            problems.append(f"{s.agent_service} web UI not accessible")
        listed = self.runner.execute(["ollama", "list"], timeout=30, retries=1)
        if s.model not in parse_model_list(listed.stdout):
            problems.append(f"model {s.model} not available")
        if problems:
            raise StepExecutionError("validate", "; ".join(problems))

    # ── Plan ───────────────────────────────────────────────────

    def steps(self) -> list[Step]:
        s = self.settings
        user = s.service_user
        return [
            Step("preflight", self.preflight, category="system", mutating=False,
                 description="check host resources"),
            Step("system_packages", self.system_packages, ("preflight",), category="system",
                 description="install apt packages"),
            Step("service_user", self.service_user, ("system_packages",), category="system",
                 description=f"create system user {user}"),
            Step("directories", self.directories, ("service_user",), category="system",
                 description="create install, config and log directories"),
            Step("docker_install", self.docker_install, ("system_packages",), category="docker",
                 description="install Docker engine"),
            Step("docker_service", self.docker_service, ("docker_install", "service_user"),
                 category="docker", description="enable Docker and wait for the daemon"),
            Step("gpu_toolkit", self.gpu_toolkit, ("system_packages",), category="gpu",
                 description="install CUDA toolkit when a GPU is present"),
            Step("runtime_install", self.runtime_install, ("system_packages",), category="runtime",
                 description="install the Ollama runtime"),
            Step("runtime_service", self.runtime_service, ("runtime_install",), category="runtime",
                 undo=self.undo_runtime_service, owner=s.runtime_user,
                 description="install runtime unit and wait for its API"),
            Step("model_pull", self.model_pull, ("runtime_service",), category="model",
                 description=f"pull {s.model}"),
            Step("agent_clone", self.agent_clone, ("directories",), category="agent",
                 undo=self.undo_agent_clone, owner=user, description="clone the agent repository"),
            Step("agent_env", self.agent_env, ("agent_clone",), category="agent",
                 undo=self.undo_agent_env, owner=user, description="create the agent virtualenv"),
            Step("agent_config", self.agent_config, ("agent_env", "directories"), category="agent",
                 undo=self.undo_agent_config, owner="root", description="write agent env and launcher"),
            Step("agent_service", self.agent_service, ("agent_config", "runtime_service"),
                 category="agent", undo=self.undo_agent_service, owner=user,
                 description="install agent unit and wait for the web UI"),
            Step("validate", self.validate, ("agent_service", "model_pull"), category="validate",
                 idempotent=False, mutating=False, description="end-to-end health check"),
        ]


def build_ai_stack_plan(
    settings: Settings,
    runner: CommandRunner,
    health: HealthChecker,
    skip_validation: bool = False,
) -> list[Step]:
    return AiStackPlan(settings, runner, health, skip_validation=skip_validation).steps()

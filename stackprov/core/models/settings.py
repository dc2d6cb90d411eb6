"""
Settings model — the provisioner's view of the target host.

Loaded from provision.yml.  Every path, port, and threshold the
built-in plans and diagnostics use comes from here; nothing is
inferred from path text.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class RetrySettings(BaseModel):
    """Retry-with-backoff defaults for commands."""

    attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=10.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float | None = None


class HealthSettings(BaseModel):
    """Readiness polling defaults."""

    timeout: float = Field(default=60.0, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)


class Requirements(BaseModel):
    """Minimum host resources."""

    min_memory_gb: int = 16
    min_disk_gb: int = 50
    min_cpu_cores: int = 4
    min_free_memory_gb: int = 4
    max_disk_usage_percent: int = 90


class ExpectedDirectory(BaseModel):
    """A directory that must exist with an explicit owner."""

    path: str
    owner: str = "root"
    group: str = "root"


class Settings(BaseModel):
    """Root settings document — provision.yml."""

    install_dir: str = "/opt/agent0-mistral"
    config_dir: str = "/etc/agent0-mistral"
    log_dir: str = "/var/log/agent0-mistral"
    state_dir: str = "/var/lib/stackprov"
    backup_dir: str = "/opt/agent0-mistral/backups"
    backup_paths: list[str] = Field(
        default_factory=lambda: ["/opt/agent0-mistral", "/etc/agent0-mistral"]
    )
    systemd_dir: str = "/etc/systemd/system"

    service_user: str = "agent0"
    runtime_service: str = "ollama"
    runtime_user: str = "ollama"        # account the runtime unit runs as
    agent_service: str = "agent0"
    model: str = "mistral-nemo:12b"
    agent_repo: str = "https://github.com/frdel/agent-zero.git"
    agent_branch: str = "main"
    runtime_port: int = 11434
    agent_port: int = 8080

    command_timeout: int = 300
    retry: RetrySettings = Field(default_factory=RetrySettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    requirements: Requirements = Field(default_factory=Requirements)

    system_packages: list[str] = Field(
        default_factory=lambda: [
            "build-essential", "python3-dev", "python3-pip", "python3-venv",
            "curl", "wget", "git", "jq", "ca-certificates", "gnupg",
            "lsb-release", "net-tools",
        ]
    )
    expected_dirs: list[ExpectedDirectory] = Field(default_factory=list)

    @property
    def runtime_url(self) -> str:
        return f"http://localhost:{self.runtime_port}"

    @property
    def agent_url(self) -> str:
        return f"http://localhost:{self.agent_port}"

    def ownership_targets(self) -> list[ExpectedDirectory]:
        """Directories checked for existence and ownership.

        Falls back to the install/config/log layout when none are
        declared explicitly.
        """
        if self.expected_dirs:
            return self.expected_dirs
        return [
            ExpectedDirectory(path=self.install_dir, owner=self.service_user, group=self.service_user),
            ExpectedDirectory(path=self.config_dir),
            ExpectedDirectory(path=self.log_dir, owner=self.service_user, group=self.service_user),
        ]

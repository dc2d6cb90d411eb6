"""
Command runner — the single place where provisioning spawns processes.

Every package install, service toggle, and download goes through
``CommandRunner.execute``.  Retries, backoff, timeouts, sudo, and the
audit trail are centralised here.

The runner NEVER raises for a failing command: after the last attempt
it returns a ``CommandResult`` with a non-zero exit code and the
calling step decides whether that is fatal.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from typing import Any, Sequence

from pydantic import BaseModel, Field

from stackprov.core.errors import StepExecutionError
from stackprov.core.persistence.audit import AuditWriter, NullAuditWriter
from stackprov.core.reliability.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

# Output is tail-truncated; installers can print megabytes.
_OUTPUT_TAIL = 2000

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


class CommandResult(BaseModel):
    """Outcome of a command after all attempts."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    attempts: int = 1
    duration_ms: int = 0
    timed_out: bool = False
    delays: list[float] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def _render(command: str | Sequence[str]) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(command)


def _tail(text: str | bytes | None) -> str:
    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-_OUTPUT_TAIL:]


class CommandRunner:
    """Run external commands with retry, exponential backoff, and timeout.

    Args:
        backoff: Default delay policy between attempts.
        default_timeout: Seconds before an attempt is killed.
        default_retries: Total number of attempts when the caller
            does not say otherwise.
        audit: Audit trail receiving one entry per attempt.
        use_sudo: Prefix commands with ``sudo -n`` when not root.
    """

    def __init__(
        self,
        backoff: BackoffPolicy | None = None,
        default_timeout: float = 300,
        default_retries: int = 1,
        audit: AuditWriter | None = None,
        use_sudo: bool = False,
    ):
        self.backoff = backoff or BackoffPolicy()
        self.default_timeout = default_timeout
        self.default_retries = default_retries
        self.audit = audit or NullAuditWriter()
        self.use_sudo = use_sudo
        self.run_id = ""

    def execute(
        self,
        command: str | Sequence[str],
        timeout: float | None = None,
        retries: int | None = None,
        backoff: BackoffPolicy | None = None,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        sudo: bool = False,
    ) -> CommandResult:
        """Run ``command`` until it exits 0 or ``retries`` attempts are used.

        Args:
            command: Argument list, or a string run through ``/bin/sh``.
            timeout: Per-attempt timeout in seconds. A timed-out attempt
                is killed and counts as a failed attempt.
            retries: Total number of attempts (>= 1).
            backoff: Override of the runner's delay policy.
            cwd: Working directory.
            env: Extra environment variables layered over ``os.environ``.
            sudo: Run through ``sudo -n`` unless already root.

        Returns:
            CommandResult of the last attempt, with ``attempts`` and the
            delays actually waited.
        """
        timeout = self.default_timeout if timeout is None else timeout
        attempts = self.default_retries if retries is None else retries
        if attempts < 1:
            raise ValueError("retries must be >= 1")
        policy = backoff or self.backoff

        argv = self._build_argv(command, sudo=sudo)
        text = _render(command)
        run_env = os.environ.copy()
        if env:
            for key, value in env.items():
                run_env[key] = os.path.expandvars(value)

        delays: list[float] = []
        started = time.monotonic()

        attempt = 1
        result = self._attempt(argv, text, timeout, cwd, run_env, attempt)
        while not result.ok and attempt < attempts:
            logger.warning(
                "Command failed (attempt %d/%d, exit %d): %s",
                attempt, attempts, result.exit_code, text,
            )
            delay = policy.wait(attempt)
            delays.append(delay)
            logger.info("Retrying in %.1fs...", delay)
            attempt += 1
            result = self._attempt(argv, text, timeout, cwd, run_env, attempt)

        if not result.ok and attempts > 1:
            logger.error("Command failed after %d attempts: %s", attempts, text)

        return result.model_copy(update={
            "attempts": attempt,
            "delays": delays,
            "duration_ms": int((time.monotonic() - started) * 1000),
        })

    def _build_argv(self, command: str | Sequence[str], *, sudo: bool) -> list[str]:
        if isinstance(command, str):
            argv = ["/bin/sh", "-c", command]
        else:
            argv = list(command)
            if not argv:
                raise ValueError("Empty command")
        if (sudo or self.use_sudo) and os.geteuid() != 0:
            argv = ["sudo", "-n"] + argv
        return argv

    def _attempt(
        self,
        argv: list[str],
        text: str,
        timeout: float,
        cwd: str | None,
        env: dict[str, str],
        attempt: int,
    ) -> CommandResult:
        start = time.monotonic()
        timed_out = False
        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            result = CommandResult(command=text, exit_code=EXIT_NOT_FOUND, stderr=str(e))
            self._log_attempt(result, attempt, 0)
            return result

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
            exit_code = proc.returncode
        except subprocess.TimeoutExpired:
            timed_out = True
            self._kill(proc)
            stdout, stderr = proc.communicate()
            exit_code = EXIT_TIMEOUT
            stderr = (stderr or "") + f"\nCommand timed out ({timeout}s)"
        except BaseException:
            # Ctrl-C and SIGTERM never reach the child's session
            self._kill(proc)
            proc.wait()
            raise

        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = CommandResult(
            command=text,
            exit_code=exit_code,
            stdout=_tail(stdout),
            stderr=_tail(stderr),
            duration_ms=elapsed_ms,
            timed_out=timed_out,
        )
        self._log_attempt(result, attempt, elapsed_ms)
        return result

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        """Kill the attempt's whole process group."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()

    def _log_attempt(self, result: CommandResult, attempt: int, elapsed_ms: int) -> None:
        logger.debug(
            "exec [%d] %s → exit %d (%dms)", attempt, result.command, result.exit_code, elapsed_ms,
        )
        self.audit.record(
            "command",
            result.command,
            "ok" if result.ok else ("timeout" if result.timed_out else "failed"),
            run_id=self.run_id,
            attempt=attempt,
            exit_code=result.exit_code,
            duration_ms=elapsed_ms,
            detail=result.stderr[-500:] if not result.ok else "",
        )


def require_ok(result: CommandResult, step_id: str) -> CommandResult:
    """Turn a failed command into a step failure."""
    if not result.ok:
        detail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else ""
        raise StepExecutionError(
            step_id,
            f"`{result.command}` exited {result.exit_code} after {result.attempts} attempt(s)"
            + (f": {detail}" if detail else ""),
        )
    return result

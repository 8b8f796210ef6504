"""Drive a Terraform binary through ``init`` and ``apply`` for one workspace.

All command output goes to a process-scoped log file for the resource, never
to the shared log stream, because ``-var`` overrides and provider output can
carry secret values.
"""

from __future__ import annotations

import datetime as dt
import enum
import logging
import os
import subprocess
from collections import abc as cabc
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

from machineshop._errors import ApplyError, ExecutionError, InitError
from machineshop._models import CommandResult, ToolchainHandle, Workspace

logger = logging.getLogger(__name__)

DEFAULT_INIT_TIMEOUT = 600.0
DEFAULT_APPLY_TIMEOUT = 3600.0
LOG_FILE_MODE = 0o600

_REDACTED_FLAGS = ("-var", "-backend-config")


class ExecutionPhase(enum.StrEnum):
    """Progress of a single init-then-apply run."""

    PENDING = "Pending"
    INITIALIZING = "Initializing"
    INITIALIZED = "Initialized"
    APPLYING = "Applying"
    DONE = "Done"
    FAILED = "Failed"


def _validate_command_args(args: list[str]) -> None:
    """Validate Terraform CLI arguments for safe execution."""
    for arg in args:
        if not isinstance(arg, str):
            msg = f"Terraform argument must be a string, got {type(arg).__name__}"
            raise TypeError(msg)
        if any(char in arg for char in ("\x00", "\n", "\r")):
            msg = "Terraform argument contains an invalid control character"
            raise ValueError(msg)


def redact_args(args: Sequence[str]) -> list[str]:
    """Mask values of ``-var`` and ``-backend-config`` options for logging.

    Examples
    --------
    >>> redact_args(["apply", "-var", "db_pass=s3cr3t", "-backend-config=bucket=state"])
    ['apply', '-var', 'db_pass=***', '-backend-config=bucket=***']
    """
    redacted: list[str] = []
    mask_next = False
    for arg in args:
        if mask_next:
            key, _, _ = arg.partition("=")
            redacted.append(f"{key}=***")
            mask_next = False
            continue
        flag, separator, value = arg.partition("=")
        if flag in _REDACTED_FLAGS and separator:
            key, _, _ = value.partition("=")
            redacted.append(f"{flag}={key}=***")
            continue
        mask_next = arg in _REDACTED_FLAGS
        redacted.append(arg)
    return redacted


def open_log_sink(path: Path) -> TextIO:
    """Open the process-scoped log file for appending with owner-only access."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, LOG_FILE_MODE)
    os.fchmod(fd, LOG_FILE_MODE)
    return os.fdopen(fd, "a", encoding="utf-8")


def run_terraform(
    executable: Path,
    args: list[str],
    cwd: Path,
    log_path: Path,
    *,
    timeout: float | None = None,
    env: cabc.Mapping[str, str] | None = None,
) -> CommandResult:
    """Execute a Terraform command with output appended to ``log_path``.

    Parameters
    ----------
    executable
        Path of the Terraform binary.
    args
        Command arguments (without the binary).
    cwd
        Workspace directory the command runs in.
    log_path
        Process-scoped log file receiving stdout and stderr.
    timeout
        Seconds before the command is killed.
    env
        Environment variables added to the inherited environment.

    Returns
    -------
    CommandResult
        Result containing success status and return code.

    Raises
    ------
    subprocess.TimeoutExpired
        If the command exceeds ``timeout``.

    Examples
    --------
    >>> result = run_terraform(Path("/opt/terraform"), ["version"], Path("."), Path("demo.log"))
    >>> result.success
    True
    """
    cmd = [str(executable), *args]
    merged_env = {**os.environ, "TF_IN_AUTOMATION": "1", **(env or {})}

    # List-based invocation without ``shell=True`` keeps each option discrete.
    _validate_command_args(cmd)
    with open_log_sink(log_path) as sink:
        stamp = dt.datetime.now(dt.UTC).isoformat()
        sink.write(f"=== {stamp} terraform {args[0] if args else ''} in {cwd}\n")
        sink.flush()
        completed = subprocess.run(
            cmd,
            cwd=cwd,
            env=merged_env,
            stdin=subprocess.DEVNULL,
            stdout=sink,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            check=False,
        )

    return CommandResult(
        success=completed.returncode == 0,
        return_code=completed.returncode,
        log_path=log_path,
    )


def build_init_args(backend: Sequence[str]) -> list[str]:
    """Return ``init`` arguments with one ``-backend-config`` per entry.

    Examples
    --------
    >>> build_init_args([" bucket=state ", "key=demo.tfstate"])
    ['init', '-input=false', '-no-color', '-upgrade', '-backend-config=bucket=state', '-backend-config=key=demo.tfstate']
    """
    args = ["init", "-input=false", "-no-color", "-upgrade"]
    args.extend(f"-backend-config={entry.strip()}" for entry in backend)
    return args


def build_apply_args(variables: Sequence[str]) -> list[str]:
    """Return ``apply`` arguments with one ``-var`` pair per entry.

    Examples
    --------
    >>> build_apply_args(["db_pass=s3cr3t"])
    ['apply', '-input=false', '-no-color', '-auto-approve', '-var', 'db_pass=s3cr3t']
    """
    args = ["apply", "-input=false", "-no-color", "-auto-approve"]
    for entry in variables:
        args.extend(["-var", entry.strip()])
    return args


class TerraformExecution:
    """Init-then-apply state machine for one workspace and one pass.

    ``apply`` refuses to run unless ``init`` succeeded on the same instance,
    and any failure moves the execution to ``Failed`` permanently.

    Examples
    --------
    >>> execution = TerraformExecution(toolchain, workspace, Path("/tmp/demo.log"))
    >>> execution.init(["bucket=state"]).success
    True
    >>> execution.apply(["db_pass=s3cr3t"]).success
    True
    >>> execution.phase
    <ExecutionPhase.DONE: 'Done'>
    """

    def __init__(
        self,
        toolchain: ToolchainHandle,
        workspace: Workspace,
        log_path: Path,
        *,
        init_timeout: float | None = DEFAULT_INIT_TIMEOUT,
        apply_timeout: float | None = DEFAULT_APPLY_TIMEOUT,
    ) -> None:
        self.toolchain = toolchain
        self.workspace = workspace
        self.log_path = log_path
        self.init_timeout = init_timeout
        self.apply_timeout = apply_timeout
        self.phase = ExecutionPhase.PENDING

    def _run(
        self,
        args: list[str],
        timeout: float | None,
        error_type: type[ExecutionError],
    ) -> CommandResult:
        verb = args[0]
        logger.info(
            "Running terraform %s for %s: %s",
            verb,
            self.workspace.directory,
            " ".join(redact_args(args)),
        )
        try:
            result = run_terraform(
                self.toolchain.executable,
                args,
                self.workspace.directory,
                self.log_path,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            self.phase = ExecutionPhase.FAILED
            msg = f"terraform {verb} timed out after {timeout}s; see {self.log_path}"
            raise error_type(msg) from exc
        except (OSError, ValueError, TypeError) as exc:
            self.phase = ExecutionPhase.FAILED
            msg = f"terraform {verb} could not be started: {exc}"
            raise error_type(msg) from exc

        if not result.success:
            self.phase = ExecutionPhase.FAILED
            msg = (
                f"terraform {verb} failed with exit status {result.return_code}; "
                f"see {self.log_path}"
            )
            raise error_type(msg)
        return result

    def init(self, backend: Sequence[str]) -> CommandResult:
        """Run ``terraform init`` with the resolved backend configuration."""
        if self.phase is not ExecutionPhase.PENDING:
            msg = f"terraform init cannot run from phase {self.phase}"
            raise InitError(msg)
        self.phase = ExecutionPhase.INITIALIZING
        result = self._run(build_init_args(backend), self.init_timeout, InitError)
        self.phase = ExecutionPhase.INITIALIZED
        return result

    def apply(self, variables: Sequence[str]) -> CommandResult:
        """Run ``terraform apply`` with the resolved variable overrides."""
        if self.phase is not ExecutionPhase.INITIALIZED:
            msg = f"terraform apply requires a successful init (phase {self.phase})"
            raise ApplyError(msg)
        self.phase = ExecutionPhase.APPLYING
        result = self._run(build_apply_args(variables), self.apply_timeout, ApplyError)
        self.phase = ExecutionPhase.DONE
        return result


__all__ = [
    "ExecutionPhase",
    "TerraformExecution",
    "build_apply_args",
    "build_init_args",
    "redact_args",
    "run_terraform",
]

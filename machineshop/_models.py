"""Data models shared by the reconciliation pipeline.

These models give each stage a small, typed contract so data flows explicitly
from one stage to the next instead of through ambient process state.

Examples
--------
>>> identity = ResourceIdentity(name="demo")
>>> identity.workspace_dir(Path("/tmp/tf"))
PosixPath('/tmp/tf/demo')
"""

from __future__ import annotations

import datetime as dt
import enum
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path

from machineshop._errors import InvalidIdentityError

_NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?$")


def _validate_path_segment(value: str, label: str) -> str:
    if not value:
        msg = f"{label} must not be blank"
        raise InvalidIdentityError(msg)
    if ".." in value or not _NAME_PATTERN.match(value):
        msg = (
            f"{label} {value!r} must contain only lowercase letters, numbers, "
            "'-' and '.'"
        )
        raise InvalidIdentityError(msg)
    return value


@dataclass(frozen=True, slots=True)
class ResourceIdentity:
    """Identity of a declared ``Terraform`` resource.

    Attributes
    ----------
    name
        Resource name, used for the workspace directory and module file.
    namespace
        Optional namespace. Namespaced identities get a nested workspace so
        equal names in different namespaces never share a directory.

    Examples
    --------
    >>> ResourceIdentity(name="demo", namespace="team-a").key
    'team-a/demo'
    """

    name: str
    namespace: str | None = None

    def __post_init__(self) -> None:
        _validate_path_segment(self.name, "resource name")
        if self.namespace is not None:
            _validate_path_segment(self.namespace, "resource namespace")

    @property
    def key(self) -> str:
        """Return a stable string key for locks and logs."""
        if self.namespace is None:
            return self.name
        return f"{self.namespace}/{self.name}"

    def workspace_dir(self, root: Path) -> Path:
        """Return the identity's workspace directory under ``root``."""
        if self.namespace is None:
            return root / self.name
        return root / self.namespace / self.name

    def log_file(self, log_dir: Path) -> Path:
        """Return the identity's process-scoped log file under ``log_dir``."""
        if self.namespace is None:
            return log_dir / f"{self.name}.log"
        return log_dir / f"{self.namespace}.{self.name}.log"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True, slots=True)
class ModuleSpec:
    """Declared state of a ``Terraform`` resource.

    Attributes
    ----------
    terraform_version
        Exact Terraform version to install (``1.5.0``).
    template
        Module-call template file name, relative to the template directory.
    module
        ``key=value`` module parameters substituted into the template.
    backend
        ``key=value`` backend settings passed to ``terraform init``.
    secrets
        ``key=value`` variable overrides passed to ``terraform apply``.
    variables
        Raw lines written to ``terraform.tfvars``.
    """

    terraform_version: str
    template: str
    module: tuple[str, ...] = ()
    backend: tuple[str, ...] = ()
    secrets: tuple[str, ...] = ()
    variables: tuple[str, ...] = ()


class CredentialKind(enum.StrEnum):
    """How the Vault bearer token is obtained."""

    APP_ROLE = "approle"
    STATIC_TOKEN = "token"
    MISSING = "missing"


@dataclass(frozen=True, slots=True)
class Credential:
    """Vault credential discovered for a single reconciliation pass.

    Attributes
    ----------
    kind
        Credential classification.
    address
        Vault server address (``VAULT_ADDR``).
    namespace
        Vault namespace (``VAULT_NAMESPACE``).
    token
        Bearer token; empty until obtained for AppRole credentials.
    role_id
        AppRole role id.
    secret_id
        AppRole secret id.
    """

    kind: CredentialKind
    address: str = ""
    namespace: str = ""
    token: str = field(default="", repr=False)
    role_id: str = field(default="", repr=False)
    secret_id: str = field(default="", repr=False)


@dataclass(frozen=True, slots=True)
class Workspace:
    """Materialized workspace for one resource."""

    directory: Path
    module_file: Path
    variables_file: Path


@dataclass(frozen=True, slots=True)
class ToolchainHandle:
    """Installed Terraform binary for one exact version."""

    version: str
    executable: Path


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Result of a Terraform command execution.

    Attributes
    ----------
    success
        Whether the command exited with status code ``0``.
    return_code
        Process exit status code returned by Terraform.
    log_path
        File that received the command's output.

    Examples
    --------
    >>> CommandResult(success=True, return_code=0, log_path=Path("demo.log")).success
    True
    """

    success: bool
    return_code: int
    log_path: Path


class ReconcilePhase(enum.StrEnum):
    """Terminal outcome of a reconciliation pass."""

    DONE = "Done"
    FAILED = "Failed"
    NOT_FOUND = "NotFound"


@dataclass(frozen=True, slots=True)
class ReconcileStatus:
    """Observable status recorded for a resource after a pass.

    Attributes
    ----------
    phase
        Terminal phase.
    reason
        Human-readable reason; never contains secret values.
    stage
        Pipeline stage that failed, or ``None`` on success.
    observed_at
        UTC timestamp of the terminal transition.
    """

    phase: ReconcilePhase
    reason: str
    stage: str | None = None
    observed_at: dt.datetime = field(
        default_factory=lambda: dt.datetime.now(dt.UTC)
    )

    def to_mapping(self) -> dict[str, str | None]:
        """Return a YAML-serialisable mapping.

        Examples
        --------
        >>> status = ReconcileStatus(ReconcilePhase.DONE, "applied")
        >>> status.to_mapping()["phase"]
        'Done'
        """
        return {
            "phase": str(self.phase),
            "reason": self.reason,
            "stage": self.stage,
            "observedAt": self.observed_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ReconcileEvent:
    """Resource-changed event that triggers one pass.

    Attributes
    ----------
    identity
        Identity of the changed resource.
    cancelled
        Set by the event source to abandon the pass between stages.
    """

    identity: ResourceIdentity
    cancelled: threading.Event = field(default_factory=threading.Event, compare=False)


__all__ = [
    "CommandResult",
    "Credential",
    "CredentialKind",
    "ModuleSpec",
    "ReconcileEvent",
    "ReconcilePhase",
    "ReconcileStatus",
    "ResourceIdentity",
    "ToolchainHandle",
    "Workspace",
]

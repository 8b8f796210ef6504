"""Exception hierarchy for the machineshop reconciliation pipeline.

Every stage of a reconciliation pass raises a subclass of
:class:`MachineShopError`, so the reconciler can catch a single base error,
record the failing stage, and report a ``Failed`` status.

Examples
--------
>>> raise SecretResolutionError("failed to resolve", keys=("db_pass",))
"""

from __future__ import annotations

from collections.abc import Iterable


class MachineShopError(Exception):
    """Base error for the reconciliation pipeline.

    Parameters
    ----------
    message
        Human-readable error message. It must never contain secret values
        because it ends up in the resource status.
    """


# Input errors


class InputError(MachineShopError):
    """Raised when the declared resource is malformed."""


class ParameterError(InputError):
    """Raised when a ``key=value`` parameter entry cannot be parsed."""


class InvalidVersionError(InputError):
    """Raised when a toolchain version string is not a semantic version."""


class InvalidIdentityError(InputError):
    """Raised when a resource name or namespace is unsafe for a path."""


class ManifestError(InputError):
    """Raised when a resource manifest cannot be loaded."""


class TemplateError(InputError):
    """Base error for module-call template problems."""


class TemplateNotFoundError(TemplateError):
    """Raised when a template file does not exist in the template directory."""


class TemplateSyntaxError(TemplateError):
    """Raised when a placeholder is anything other than a key lookup."""


# Resolution errors


class ResolutionError(MachineShopError):
    """Base error for credential and secret resolution failures."""


class MissingCredentialError(ResolutionError):
    """Raised when secret references exist but no credentials are configured."""


class CredentialLoginError(ResolutionError):
    """Raised when configured AppRole credentials fail to log in."""


class SecretResolutionError(ResolutionError):
    """Raised when one or more secret references cannot be resolved.

    Parameters
    ----------
    message
        Human-readable error message.
    keys
        Parameter keys whose secret references failed to resolve.

    Examples
    --------
    >>> SecretResolutionError("lookup failed", keys=["db_pass"]).keys
    ('db_pass',)
    """

    def __init__(self, message: str, *, keys: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.keys = tuple(keys)


class VaultCommandError(ResolutionError):
    """Raised when a ``vault`` CLI invocation fails."""


# Build errors


class WorkspaceBuildError(MachineShopError):
    """Raised when the workspace directory or its files cannot be written."""


# Toolchain errors


class ToolchainError(MachineShopError):
    """Base error for toolchain acquisition."""


class ToolchainUnavailableError(ToolchainError):
    """Raised when the releases service does not offer the requested build."""


class ToolchainInstallError(ToolchainError):
    """Raised when downloading, verifying or unpacking a toolchain fails."""


# Execution errors


class ExecutionError(MachineShopError):
    """Base error for Terraform command execution."""


class InitError(ExecutionError):
    """Raised when ``terraform init`` fails."""


class ApplyError(ExecutionError):
    """Raised when ``terraform apply`` fails or runs without a prior init."""


class PassCancelledError(MachineShopError):
    """Raised when the triggering event is cancelled mid-pass."""


class StatusReportError(MachineShopError):
    """Raised when the outcome of a pass cannot be recorded in the store."""


__all__ = [
    "ApplyError",
    "CredentialLoginError",
    "ExecutionError",
    "InitError",
    "InputError",
    "InvalidIdentityError",
    "InvalidVersionError",
    "MachineShopError",
    "ManifestError",
    "MissingCredentialError",
    "ParameterError",
    "PassCancelledError",
    "ResolutionError",
    "SecretResolutionError",
    "StatusReportError",
    "TemplateError",
    "TemplateNotFoundError",
    "TemplateSyntaxError",
    "ToolchainError",
    "ToolchainInstallError",
    "ToolchainUnavailableError",
    "VaultCommandError",
    "WorkspaceBuildError",
]

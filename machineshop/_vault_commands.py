"""Command helpers for talking to Vault through the ``vault`` CLI."""

from __future__ import annotations

import json
import os
from collections import abc as cabc
from dataclasses import dataclass
from typing import Any

from plumbum import CommandNotFound, local
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

from machineshop._errors import VaultCommandError
from machineshop._models import Credential

DEFAULT_VAULT_TIMEOUT = 30
VAULT_BINARY = "vault"


@dataclass(slots=True)
class CommandContext:
    """Execution options for :func:`run_command`."""

    env: dict[str, str] | None = None
    stdin: str | None = None
    timeout: float | None = None


def run_command(
    command: str,
    *args: str,
    context: CommandContext | None = None,
) -> str:
    """Execute an external command and return its standard output.

    Raises
    ------
    VaultCommandError
        If the command is missing or cannot be started, exits non-zero, or
        exceeds its timeout. The message carries the command name only;
        arguments may hold secret ids.

    Examples
    --------
    >>> run_command("printf", "hello")
    'hello'
    """

    ctx = context or CommandContext()
    try:
        bound = local[command][list(args)]
        if ctx.stdin is None:
            _, stdout, _ = bound.run(env=ctx.env, timeout=ctx.timeout)
        else:
            _, stdout, _ = (bound << ctx.stdin).run(env=ctx.env, timeout=ctx.timeout)
    except ProcessTimedOut as exc:
        msg = f"Command {command!r} timed out after {ctx.timeout}s"
        raise VaultCommandError(msg) from exc
    except ProcessExecutionError as exc:
        msg = f"Command {command!r} failed: {exc.stderr.strip()}"
        raise VaultCommandError(msg) from exc
    except CommandNotFound as exc:
        msg = f"Command {command!r} not found on PATH"
        raise VaultCommandError(msg) from exc
    except OSError as exc:
        msg = f"Command {command!r} could not be started: {exc.strerror or exc}"
        raise VaultCommandError(msg) from exc
    return stdout


def build_vault_env(
    credential: Credential,
    token: str | None = None,
    base_env: cabc.Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Construct the environment for Vault CLI invocations.

    The returned mapping is a copy; the process environment is never touched.

    Examples
    --------
    >>> from machineshop._models import CredentialKind
    >>> cred = Credential(CredentialKind.STATIC_TOKEN, "https://vault", "ns", "root")
    >>> build_vault_env(cred, token="root", base_env={})["VAULT_TOKEN"]
    'root'
    """

    env = dict(os.environ if base_env is None else base_env)
    if credential.address:
        env["VAULT_ADDR"] = credential.address
    if credential.namespace:
        env["VAULT_NAMESPACE"] = credential.namespace
    if token is not None:
        env["VAULT_TOKEN"] = token
    else:
        env.pop("VAULT_TOKEN", None)
    return env


def approle_login(
    credential: Credential,
    *,
    timeout: float | None = DEFAULT_VAULT_TIMEOUT,
) -> str:
    """Exchange AppRole credentials for a Vault token.

    The role id and secret id are sent on stdin so they never appear in the
    process table.

    Examples
    --------
    >>> approle_login(credential)  # doctest: +SKIP
    'hvs.CAES...'
    """

    payload = json.dumps(
        {"role_id": credential.role_id, "secret_id": credential.secret_id}
    )
    stdout = run_command(
        VAULT_BINARY,
        "write",
        "-field=token",
        "auth/approle/login",
        "-",
        context=CommandContext(
            env=build_vault_env(credential, token=None),
            stdin=payload,
            timeout=timeout,
        ),
    )
    token = stdout.strip()
    if not token:
        msg = "vault approle login returned an empty token"
        raise VaultCommandError(msg)
    return token


def read_kv_document(
    path: str,
    credential: Credential,
    token: str,
    *,
    timeout: float | None = DEFAULT_VAULT_TIMEOUT,
) -> dict[str, Any]:
    """Return the ``data`` mapping of a KV v2 secret at ``path``.

    Parameters
    ----------
    path
        Full API path including ``/data/`` (``kv/data/app``).
    credential
        Credential supplying address and namespace.
    token
        Bearer token for the read.
    """

    stdout = run_command(
        VAULT_BINARY,
        "read",
        "-format=json",
        path,
        context=CommandContext(
            env=build_vault_env(credential, token=token),
            timeout=timeout,
        ),
    )
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError as exc:
        msg = f"Invalid JSON from vault read of {path!r}: {exc.msg}"
        raise VaultCommandError(msg) from exc
    data = payload.get("data", {}) if isinstance(payload, dict) else {}
    document = data.get("data") if isinstance(data, dict) else None
    if not isinstance(document, dict):
        msg = f"vault read of {path!r} did not return a KV v2 document"
        raise VaultCommandError(msg)
    return document


def read_secret_field(
    path: str,
    field_name: str,
    credential: Credential,
    token: str,
    *,
    timeout: float | None = DEFAULT_VAULT_TIMEOUT,
) -> str:
    """Return one field of a KV v2 secret as a string.

    Non-string values are JSON-encoded so structured fields survive as
    Terraform-readable literals.
    """

    document = read_kv_document(path, credential, token, timeout=timeout)
    if field_name not in document:
        msg = f"field {field_name!r} not present in secret {path!r}"
        raise VaultCommandError(msg)
    value = document[field_name]
    if isinstance(value, str):
        return value
    return json.dumps(value)


__all__ = [
    "CommandContext",
    "VAULT_BINARY",
    "approle_login",
    "build_vault_env",
    "read_kv_document",
    "read_secret_field",
    "run_command",
]

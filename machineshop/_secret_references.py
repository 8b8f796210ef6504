"""Detect Vault secret references in parameters and substitute their values.

A secret reference is a parameter value shaped like
``<mount>/data/<path>:<field>``, e.g. ``kv/data/app:password``. Only the value
segment of a ``key=value`` entry is inspected and replaced; keys are never
changed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from machineshop import _vault_commands
from machineshop._errors import SecretResolutionError, VaultCommandError
from machineshop._models import Credential
from machineshop._parameters import split_parameter

logger = logging.getLogger(__name__)

SECRET_REFERENCE_PATTERN = re.compile(r".+/data/.+:.+")

type SecretFetcher = Callable[[str, str, Credential, str], str]


@dataclass(frozen=True, slots=True)
class SecretReference:
    """A parsed ``<path>:<field>`` secret reference.

    Examples
    --------
    >>> SecretReference.parse("kv/data/app:password")
    SecretReference(path='kv/data/app', field='password')
    """

    path: str
    field: str

    @classmethod
    def parse(cls, value: str) -> SecretReference:
        """Split ``value`` on its last ``:`` into path and field."""
        path, _, field_name = value.strip().rpartition(":")
        return cls(path=path, field=field_name)


def is_secret_reference(value: str) -> bool:
    """Return whether ``value`` matches the secret-path pattern.

    Examples
    --------
    >>> is_secret_reference("kv/data/app:password")
    True
    >>> is_secret_reference("eu-west-1")
    False
    """
    return SECRET_REFERENCE_PATTERN.search(value) is not None


def has_secret_references(entries: Iterable[str]) -> bool:
    """Return whether any ``key=value`` entry carries a secret reference."""
    return any(is_secret_reference(split_parameter(entry)[1]) for entry in entries)


def _fetch_with_timeout(timeout: float | None) -> SecretFetcher:
    def fetch(path: str, field_name: str, credential: Credential, token: str) -> str:
        return _vault_commands.read_secret_field(
            path, field_name, credential, token, timeout=timeout
        )

    return fetch


def resolve_secret_parameters(
    entries: Sequence[str],
    credential: Credential,
    *,
    fetch: SecretFetcher | None = None,
    timeout: float | None = None,
) -> list[str]:
    """Replace secret references in ``entries`` with their resolved values.

    Parameters
    ----------
    entries
        Ordered ``key=value`` entries.
    credential
        Credential holding the bearer token used for every lookup.
    fetch
        Secret lookup callable ``(path, field, credential, token) -> value``.
        Defaults to a ``vault read`` through the CLI.
    timeout
        Per-lookup timeout in seconds for the default fetcher.

    Returns
    -------
    list[str]
        Entries of the same length and order. Entries without a reference are
        returned unchanged.

    Raises
    ------
    SecretResolutionError
        If any reference fails to resolve. Every entry is attempted, and the
        error names all failing keys.

    Examples
    --------
    >>> from machineshop._models import CredentialKind
    >>> cred = Credential(CredentialKind.STATIC_TOKEN, token="t")
    >>> resolve_secret_parameters(
    ...     ["user=admin", "pass=kv/data/app:password"],
    ...     cred,
    ...     fetch=lambda path, field, credential, token: "s3cr3t",
    ... )
    ['user=admin', 'pass=s3cr3t']
    """
    lookup = fetch or _fetch_with_timeout(timeout)
    resolved: list[str] = []
    failed: list[str] = []

    for position, entry in enumerate(entries):
        key, value = split_parameter(entry, position=position)
        if not is_secret_reference(value):
            resolved.append(entry)
            continue

        reference = SecretReference.parse(value)
        try:
            secret_value = lookup(reference.path, reference.field, credential, credential.token)
        except VaultCommandError as exc:
            logger.warning("Secret reference for %r could not be resolved: %s", key, exc)
            failed.append(key)
            resolved.append(entry)
            continue
        logger.debug("Resolved secret reference for %r from %s", key, reference.path)
        resolved.append(f"{entry.partition('=')[0]}={secret_value}")

    if failed:
        msg = f"failed to resolve secret reference(s) for: {', '.join(failed)}"
        raise SecretResolutionError(msg, keys=failed)
    return resolved


__all__ = [
    "SECRET_REFERENCE_PATTERN",
    "SecretFetcher",
    "SecretReference",
    "has_secret_references",
    "is_secret_reference",
    "resolve_secret_parameters",
]

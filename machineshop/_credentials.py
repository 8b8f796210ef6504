"""Discover Vault credentials and turn them into a bearer token."""

from __future__ import annotations

import logging
import os
from collections import abc as cabc
from dataclasses import replace

from machineshop import _vault_commands
from machineshop._errors import (
    CredentialLoginError,
    MissingCredentialError,
    VaultCommandError,
)
from machineshop._models import Credential, CredentialKind

logger = logging.getLogger(__name__)

APPROLE_ENV_VARS = ("VAULT_ADDR", "VAULT_ROLE_ID", "VAULT_SECRET_ID", "VAULT_NAMESPACE")
TOKEN_ENV_VARS = ("VAULT_ADDR", "VAULT_TOKEN", "VAULT_NAMESPACE")


def _all_present(env: cabc.Mapping[str, str], keys: cabc.Iterable[str]) -> bool:
    return all(env.get(key, "").strip() for key in keys)


def discover_credential(env: cabc.Mapping[str, str] | None = None) -> Credential:
    """Classify the Vault credentials available in ``env``.

    AppRole credentials win over a static token; neither yields a
    ``missing`` credential. No network calls are made here.

    Parameters
    ----------
    env
        Environment mapping to inspect. Defaults to ``os.environ``.

    Returns
    -------
    Credential
        The classified credential. AppRole credentials carry no token yet.

    Examples
    --------
    >>> discover_credential({}).kind
    <CredentialKind.MISSING: 'missing'>
    >>> discover_credential({
    ...     "VAULT_ADDR": "https://vault", "VAULT_TOKEN": "t", "VAULT_NAMESPACE": "ns",
    ... }).kind
    <CredentialKind.STATIC_TOKEN: 'token'>
    """
    source = os.environ if env is None else env

    if _all_present(source, APPROLE_ENV_VARS):
        return Credential(
            kind=CredentialKind.APP_ROLE,
            address=source["VAULT_ADDR"].strip(),
            namespace=source["VAULT_NAMESPACE"].strip(),
            role_id=source["VAULT_ROLE_ID"].strip(),
            secret_id=source["VAULT_SECRET_ID"].strip(),
        )
    if _all_present(source, TOKEN_ENV_VARS):
        return Credential(
            kind=CredentialKind.STATIC_TOKEN,
            address=source["VAULT_ADDR"].strip(),
            namespace=source["VAULT_NAMESPACE"].strip(),
            token=source["VAULT_TOKEN"].strip(),
        )
    return Credential(kind=CredentialKind.MISSING)


def obtain_token(credential: Credential, *, timeout: float | None = None) -> Credential:
    """Return ``credential`` with a usable bearer token.

    Raises
    ------
    MissingCredentialError
        If no credentials are configured.
    CredentialLoginError
        If the AppRole login is rejected or fails.
    """
    match credential.kind:
        case CredentialKind.STATIC_TOKEN:
            return credential
        case CredentialKind.APP_ROLE:
            logger.info("Logging in to Vault at %s via AppRole", credential.address)
            try:
                token = _vault_commands.approle_login(credential, timeout=timeout)
            except VaultCommandError as exc:
                msg = f"Vault AppRole login at {credential.address} failed"
                raise CredentialLoginError(msg) from exc
            return replace(credential, token=token)
        case _:
            msg = (
                "secret references require Vault credentials; set VAULT_ADDR, "
                "VAULT_NAMESPACE and either VAULT_ROLE_ID/VAULT_SECRET_ID or "
                "VAULT_TOKEN"
            )
            raise MissingCredentialError(msg)


__all__ = [
    "APPROLE_ENV_VARS",
    "TOKEN_ENV_VARS",
    "discover_credential",
    "obtain_token",
]

#!/usr/bin/env -S uv run python
# /// script
# requires-python = ">=3.13"
# dependencies = ["cyclopts>=2.9", "plumbum", "pyyaml", "httpx"]
# ///
"""Reconcile ``Terraform`` manifests into applied workspaces.

This script:
- resolves configuration from flags and ``MACHINESHOP_*`` variables;
- loads ``kind: Terraform`` manifests from the manifest directory;
- runs one reconciliation pass per requested resource (all by default),
  concurrently across resources; and
- prints one summary line per resource, exiting non-zero if any failed.
"""

from __future__ import annotations

import logging
import sys
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

from cyclopts import App, Parameter

from machineshop._errors import InputError, MachineShopError
from machineshop._input_resolution import InputResolution, resolve_input
from machineshop._models import ReconcilePhase, ReconcileStatus, ResourceIdentity
from machineshop._reconciler import (
    Reconciler,
    ReconcilerConfig,
    dispatch_events,
    events_for,
)
from machineshop._resource_store import FileResourceStore
from machineshop._terraform import DEFAULT_APPLY_TIMEOUT, DEFAULT_INIT_TIMEOUT
from machineshop._toolchain import DEFAULT_INSTALL_TIMEOUT, DEFAULT_RELEASES_URL
from machineshop._vault_commands import DEFAULT_VAULT_TIMEOUT

app = App(help="Reconcile Terraform manifests into applied workspaces.")
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_MAX_WORKERS = 4


@dataclass(frozen=True, slots=True)
class ReconcileInputs:
    """Resolved inputs for a reconciliation run."""

    manifest_dir: Path
    config: ReconcilerConfig
    max_workers: int
    log_level: str


@dataclass(frozen=True, slots=True)
class RawReconcileInputs:
    """Raw reconciliation inputs from CLI flags."""

    manifest_dir: Path | None = None
    workspace_root: Path | None = None
    template_dir: Path | None = None
    toolchain_dir: Path | None = None
    log_dir: Path | None = None
    releases_url: str | None = None
    max_workers: int | None = None
    log_level: str | None = None
    vault_timeout: float | None = None
    install_timeout: float | None = None
    init_timeout: float | None = None
    apply_timeout: float | None = None


def resolve_reconcile_inputs(
    raw: RawReconcileInputs,
    env: cabc.Mapping[str, str] | None = None,
) -> ReconcileInputs:
    """Resolve reconciliation inputs, preferring flags over the environment."""

    def _path(value: Path | None, env_key: str, default: str | None = None) -> Path:
        resolution = InputResolution(
            env_key=env_key,
            default=Path(default) if default is not None else None,
            required=default is None,
            convert=Path,
        )
        return Path(resolve_input(value, resolution, env))

    def _number(value: float | None, env_key: str, default: float) -> float:
        resolution = InputResolution(env_key=env_key, default=default, convert=float)
        resolved = float(resolve_input(value, resolution, env))
        if resolved <= 0:
            msg = f"{env_key} must be positive, got {resolved}"
            raise SystemExit(msg)
        return resolved

    releases_url = resolve_input(
        raw.releases_url,
        InputResolution(env_key="MACHINESHOP_RELEASES_URL", default=DEFAULT_RELEASES_URL),
        env,
    )
    log_level = resolve_input(
        raw.log_level,
        InputResolution(env_key="MACHINESHOP_LOG_LEVEL", default="INFO"),
        env,
    )
    config = ReconcilerConfig(
        workspace_root=_path(raw.workspace_root, "MACHINESHOP_WORKSPACE_ROOT", "/tmp/tf"),
        template_dir=_path(raw.template_dir, "MACHINESHOP_TEMPLATE_DIR", "terraform"),
        toolchain_dir=_path(
            raw.toolchain_dir,
            "MACHINESHOP_TOOLCHAIN_DIR",
            "/tmp/machineshop/toolchains",
        ),
        log_dir=_path(raw.log_dir, "MACHINESHOP_LOG_DIR", "/tmp/machineShop"),
        releases_url=str(releases_url),
        vault_timeout=_number(
            raw.vault_timeout, "MACHINESHOP_VAULT_TIMEOUT", DEFAULT_VAULT_TIMEOUT
        ),
        install_timeout=_number(
            raw.install_timeout, "MACHINESHOP_INSTALL_TIMEOUT", DEFAULT_INSTALL_TIMEOUT
        ),
        init_timeout=_number(
            raw.init_timeout, "MACHINESHOP_INIT_TIMEOUT", DEFAULT_INIT_TIMEOUT
        ),
        apply_timeout=_number(
            raw.apply_timeout, "MACHINESHOP_APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT
        ),
    )
    max_workers = _number(raw.max_workers, "MACHINESHOP_MAX_WORKERS", DEFAULT_MAX_WORKERS)

    return ReconcileInputs(
        manifest_dir=_path(raw.manifest_dir, "MACHINESHOP_MANIFEST_DIR"),
        config=config,
        max_workers=int(max_workers),
        log_level=str(log_level).upper(),
    )


def configure_logging(level: str) -> None:
    """Configure the shared log stream at ``level``."""
    numeric = logging.getLevelName(level)
    if not isinstance(numeric, int):
        msg = f"unknown log level {level!r}"
        raise SystemExit(msg)
    logging.basicConfig(level=numeric, format=LOG_FORMAT)


def parse_identity(value: str) -> ResourceIdentity:
    """Parse ``name`` or ``namespace/name`` into a :class:`ResourceIdentity`.

    Examples
    --------
    >>> parse_identity("team-a/demo")
    ResourceIdentity(name='demo', namespace='team-a')
    """
    namespace, separator, name = value.strip().rpartition("/")
    return ResourceIdentity(name=name, namespace=namespace if separator else None)


def format_outcome(identity: ResourceIdentity, status: ReconcileStatus) -> str:
    """Return a one-line summary of a pass outcome."""
    stage = f" at {status.stage}" if status.stage else ""
    return f"{identity}: {status.phase}{stage} ({status.reason})"


def reconcile_resources(
    inputs: ReconcileInputs,
    resources: cabc.Sequence[str] | None = None,
) -> list[tuple[ResourceIdentity, ReconcileStatus]]:
    """Reconcile ``resources`` (or every declared resource) and return outcomes."""
    store = FileResourceStore(inputs.manifest_dir)
    identities = (
        [parse_identity(resource) for resource in resources]
        if resources
        else store.list_identities()
    )
    if not identities:
        logger.warning("No Terraform resources found in %s", inputs.manifest_dir)
        return []

    reconciler = Reconciler(store, inputs.config)
    return dispatch_events(
        reconciler,
        events_for(identities),
        max_workers=inputs.max_workers,
    )


@app.default
def main(
    resource: Annotated[
        list[str] | None,
        Parameter(help="Resource to reconcile as name or namespace/name; repeatable."),
    ] = None,
    manifest_dir: Path | None = None,
    workspace_root: Path | None = None,
    template_dir: Path | None = None,
    toolchain_dir: Path | None = None,
    log_dir: Path | None = None,
    releases_url: str | None = None,
    max_workers: int | None = None,
    log_level: str | None = None,
    vault_timeout: float | None = None,
    install_timeout: float | None = None,
    init_timeout: float | None = None,
    apply_timeout: float | None = None,
) -> int:
    """Reconcile Terraform manifests.

    Each ``--resource`` names one resource as ``name`` or
    ``namespace/name``; without any, every manifest in ``--manifest-dir`` is
    reconciled. Unset flags fall back to ``MACHINESHOP_*`` environment
    variables.
    """
    inputs = resolve_reconcile_inputs(
        RawReconcileInputs(
            manifest_dir=manifest_dir,
            workspace_root=workspace_root,
            template_dir=template_dir,
            toolchain_dir=toolchain_dir,
            log_dir=log_dir,
            releases_url=releases_url,
            max_workers=max_workers,
            log_level=log_level,
            vault_timeout=vault_timeout,
            install_timeout=install_timeout,
            init_timeout=init_timeout,
            apply_timeout=apply_timeout,
        )
    )
    configure_logging(inputs.log_level)

    try:
        outcomes = reconcile_resources(inputs, resource)
    except InputError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except MachineShopError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    for identity, status in outcomes:
        print(format_outcome(identity, status))

    failed = [identity for identity, status in outcomes if status.phase is ReconcilePhase.FAILED]
    if failed:
        print(f"{len(failed)} of {len(outcomes)} resource(s) failed", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(app())

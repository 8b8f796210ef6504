"""Resource-store seam plus a file-backed implementation.

The reconciler only needs two things from the store: the current spec of a
resource and a place to record the terminal status of a pass. The
:class:`FileResourceStore` keeps ``Terraform`` manifests as YAML documents in
a directory and writes statuses beside them.

Examples
--------
>>> store = FileResourceStore(Path("manifests"))
>>> store.get(ResourceIdentity("demo")).terraform_version
'1.5.0'
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

import yaml

from machineshop._errors import InputError, ManifestError, StatusReportError
from machineshop._models import ModuleSpec, ReconcileStatus, ResourceIdentity
from machineshop._workspace import write_file_atomic

logger = logging.getLogger(__name__)

RESOURCE_KIND = "Terraform"
STATUS_SUFFIX = ".status.yaml"


class ResourceStore(Protocol):
    """Collaborator that owns declared resources and their status."""

    def get(self, identity: ResourceIdentity) -> ModuleSpec | None:
        """Return the current spec, or ``None`` when the resource is gone."""
        ...

    def report_status(self, identity: ResourceIdentity, status: ReconcileStatus) -> None:
        """Record the terminal outcome of a pass."""
        ...


def _string_list(spec: dict[str, Any], key: str, source: Path) -> tuple[str, ...]:
    value = spec.get(key) or []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        msg = f"spec.{key} in {source} must be a list of strings"
        raise ManifestError(msg)
    return tuple(value)


def _required_string(spec: dict[str, Any], key: str, source: Path) -> str:
    value = spec.get(key)
    if not isinstance(value, str) or not value.strip():
        msg = f"spec.{key} in {source} must be a non-empty string"
        raise ManifestError(msg)
    return value.strip()


def parse_module_spec(spec: Any, source: Path) -> ModuleSpec:
    """Convert a manifest ``spec`` mapping into a :class:`ModuleSpec`.

    Examples
    --------
    >>> parse_module_spec(
    ...     {"terraformVersion": "1.5.0", "template": "module.tf.tmpl"}, Path("demo.yaml")
    ... ).template
    'module.tf.tmpl'
    """
    if not isinstance(spec, dict):
        msg = f"spec in {source} must be a mapping"
        raise ManifestError(msg)
    return ModuleSpec(
        terraform_version=_required_string(spec, "terraformVersion", source),
        template=_required_string(spec, "template", source),
        module=_string_list(spec, "module", source),
        backend=_string_list(spec, "backend", source),
        secrets=_string_list(spec, "secrets", source),
        variables=_string_list(spec, "variables", source),
    )


def _identity_of(document: dict[str, Any], source: Path) -> ResourceIdentity:
    metadata = document.get("metadata")
    if not isinstance(metadata, dict) or not isinstance(metadata.get("name"), str):
        msg = f"Terraform manifest in {source} is missing metadata.name"
        raise ManifestError(msg)
    namespace = metadata.get("namespace")
    if namespace is not None and not isinstance(namespace, str):
        msg = f"metadata.namespace in {source} must be a string"
        raise ManifestError(msg)
    try:
        return ResourceIdentity(name=metadata["name"], namespace=namespace)
    except InputError as exc:
        msg = f"invalid resource identity in {source}: {exc}"
        raise ManifestError(msg) from exc


class FileResourceStore:
    """Read ``Terraform`` manifests from YAML files in ``manifest_dir``.

    Any ``*.yaml`` or ``*.yml`` file may hold one or more documents; only
    documents with ``kind: Terraform`` are considered. Status documents are
    written to ``<manifest_dir>/[<namespace>.]<name>.status.yaml``.
    """

    def __init__(self, manifest_dir: Path) -> None:
        self.manifest_dir = manifest_dir

    def _manifest_files(self) -> list[Path]:
        if not self.manifest_dir.is_dir():
            msg = f"manifest directory {self.manifest_dir} does not exist"
            raise ManifestError(msg)
        files = [
            path
            for pattern in ("*.yaml", "*.yml")
            for path in self.manifest_dir.glob(pattern)
            if not path.name.endswith(STATUS_SUFFIX)
        ]
        return sorted(files)

    def _documents(self) -> Iterator[tuple[Path, dict[str, Any]]]:
        for path in self._manifest_files():
            try:
                documents = list(yaml.safe_load_all(path.read_text(encoding="utf-8")))
            except yaml.YAMLError as exc:
                msg = f"failed to parse manifest {path}: {exc}"
                raise ManifestError(msg) from exc
            for document in documents:
                if isinstance(document, dict) and document.get("kind") == RESOURCE_KIND:
                    yield path, document

    def list_identities(self) -> list[ResourceIdentity]:
        """Return the identities of every declared resource."""
        return [_identity_of(document, path) for path, document in self._documents()]

    def get(self, identity: ResourceIdentity) -> ModuleSpec | None:
        """Return the spec declared for ``identity`` or ``None``."""
        for path, document in self._documents():
            try:
                candidate = _identity_of(document, path)
            except ManifestError as exc:
                logger.warning("Skipping manifest document: %s", exc)
                continue
            if candidate == identity:
                return parse_module_spec(document.get("spec"), path)
        return None

    def status_path(self, identity: ResourceIdentity) -> Path:
        """Return the status document path for ``identity``."""
        stem = identity.name if identity.namespace is None else f"{identity.namespace}.{identity.name}"
        return self.manifest_dir / f"{stem}{STATUS_SUFFIX}"

    def report_status(self, identity: ResourceIdentity, status: ReconcileStatus) -> None:
        """Write ``status`` for ``identity`` as a YAML document.

        Raises
        ------
        StatusReportError
            If the status document cannot be written.
        """
        document = {
            "name": identity.name,
            "namespace": identity.namespace,
            "status": status.to_mapping(),
        }
        path = self.status_path(identity)
        try:
            write_file_atomic(path, yaml.safe_dump(document, sort_keys=False))
        except OSError as exc:
            msg = f"failed to write status for {identity} to {path}: {exc.strerror or exc}"
            raise StatusReportError(msg) from exc
        logger.debug("Recorded status %s for %s in %s", status.phase, identity, path)

    def read_status(self, identity: ResourceIdentity) -> dict[str, Any] | None:
        """Return the recorded status mapping for ``identity``, if any."""
        path = self.status_path(identity)
        if not path.exists():
            return None
        document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return document.get("status")


__all__ = [
    "FileResourceStore",
    "RESOURCE_KIND",
    "ResourceStore",
    "parse_module_spec",
]

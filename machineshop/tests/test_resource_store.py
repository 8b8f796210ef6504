"""Tests for the YAML manifest resource store."""

from __future__ import annotations

from pathlib import Path

import pytest

from machineshop._errors import ManifestError, StatusReportError
from machineshop._models import ModuleSpec, ReconcilePhase, ReconcileStatus, ResourceIdentity
from machineshop._resource_store import FileResourceStore

MANIFESTS = """\
apiVersion: machineshop.example/v1
kind: Terraform
metadata:
  name: demo
spec:
  terraformVersion: 1.5.0
  template: module.tf.tmpl
  module: [region=eu-west-1]
  backend: [bucket=state]
  secrets: ["db_pass=kv/data/app:password"]
  variables: [x=1]
---
kind: ConfigMap
metadata:
  name: ignored
---
kind: Terraform
metadata:
  name: demo
  namespace: team-a
spec:
  terraformVersion: "1.6.0"
  template: other.tf.tmpl
"""


@pytest.fixture
def store(tmp_path: Path) -> FileResourceStore:
    (tmp_path / "resources.yaml").write_text(MANIFESTS, encoding="utf-8")
    return FileResourceStore(tmp_path)


def test_get_returns_module_spec(store: FileResourceStore) -> None:
    spec = store.get(ResourceIdentity("demo"))

    assert spec == ModuleSpec(
        terraform_version="1.5.0",
        template="module.tf.tmpl",
        module=("region=eu-west-1",),
        backend=("bucket=state",),
        secrets=("db_pass=kv/data/app:password",),
        variables=("x=1",),
    )


def test_get_distinguishes_namespaces(store: FileResourceStore) -> None:
    spec = store.get(ResourceIdentity("demo", namespace="team-a"))

    assert spec is not None
    assert spec.template == "other.tf.tmpl"
    assert spec.secrets == ()


def test_get_unknown_identity_returns_none(store: FileResourceStore) -> None:
    assert store.get(ResourceIdentity("missing")) is None


def test_list_identities_skips_other_kinds(store: FileResourceStore) -> None:
    assert store.list_identities() == [
        ResourceIdentity("demo"),
        ResourceIdentity("demo", namespace="team-a"),
    ]


def test_invalid_spec_raises_manifest_error(tmp_path: Path) -> None:
    (tmp_path / "bad.yml").write_text(
        "kind: Terraform\nmetadata: {name: bad}\nspec: {template: t, module: region}\n",
        encoding="utf-8",
    )

    with pytest.raises(ManifestError, match="terraformVersion"):
        FileResourceStore(tmp_path).get(ResourceIdentity("bad"))


def test_missing_manifest_dir_raises(tmp_path: Path) -> None:
    with pytest.raises(ManifestError, match="does not exist"):
        FileResourceStore(tmp_path / "absent").list_identities()


def test_status_round_trip(store: FileResourceStore, tmp_path: Path) -> None:
    identity = ResourceIdentity("demo", namespace="team-a")
    store.report_status(
        identity,
        ReconcileStatus(ReconcilePhase.FAILED, "terraform init failed", stage="init"),
    )

    status = store.read_status(identity)

    assert (tmp_path / "team-a.demo.status.yaml").exists()
    assert status["phase"] == "Failed"
    assert status["stage"] == "init"
    assert store.list_identities()[0] == ResourceIdentity("demo"), "status files are not manifests"


def test_status_write_failure_raises_status_report_error(tmp_path: Path) -> None:
    store = FileResourceStore(tmp_path / "absent")

    with pytest.raises(StatusReportError, match="failed to write status for demo"):
        store.report_status(
            ResourceIdentity("demo"),
            ReconcileStatus(ReconcilePhase.DONE, "terraform 1.5.0 applied"),
        )

"""Tests for workspace materialisation."""

from __future__ import annotations

import stat
from pathlib import Path

import pytest

from machineshop._errors import WorkspaceBuildError
from machineshop._models import ResourceIdentity
from machineshop._workspace import build_workspace, write_file_atomic


def test_build_workspace_writes_module_and_variables(tmp_path: Path) -> None:
    workspace = build_workspace(
        tmp_path,
        ResourceIdentity("demo"),
        'module "demo" {}\n',
        ["x = 1", 'name = "demo"'],
    )

    assert workspace.directory == tmp_path / "demo"
    assert workspace.module_file.read_text(encoding="utf-8") == 'module "demo" {}\n'
    assert workspace.variables_file.read_text(encoding="utf-8") == 'x = 1\nname = "demo"'
    assert stat.S_IMODE(workspace.module_file.stat().st_mode) == 0o644


def test_build_workspace_is_byte_identical_on_repeat(tmp_path: Path) -> None:
    identity = ResourceIdentity("demo")
    first = build_workspace(tmp_path, identity, "a", ["x=1"])
    before = (first.module_file.read_bytes(), first.variables_file.read_bytes())

    second = build_workspace(tmp_path, identity, "a", ["x=1"])

    assert second == first
    assert (second.module_file.read_bytes(), second.variables_file.read_bytes()) == before
    assert sorted(p.name for p in first.directory.iterdir()) == ["demo.tf", "terraform.tfvars"]


def test_build_workspace_overwrites_previous_content(tmp_path: Path) -> None:
    identity = ResourceIdentity("demo")
    build_workspace(tmp_path, identity, "old module", ["old=1"])

    workspace = build_workspace(tmp_path, identity, "new", [])

    assert workspace.module_file.read_text(encoding="utf-8") == "new"
    assert workspace.variables_file.read_text(encoding="utf-8") == ""


def test_namespaced_identities_do_not_share_directories(tmp_path: Path) -> None:
    first = build_workspace(tmp_path, ResourceIdentity("demo", "team-a"), "a", [])
    second = build_workspace(tmp_path, ResourceIdentity("demo", "team-b"), "b", [])

    assert first.directory != second.directory
    assert first.module_file.read_text(encoding="utf-8") == "a"


def test_build_workspace_wraps_filesystem_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "root"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(WorkspaceBuildError, match="failed to build workspace"):
        build_workspace(blocker, ResourceIdentity("demo"), "a", [])


def test_write_file_atomic_leaves_no_temp_file(tmp_path: Path) -> None:
    target = tmp_path / "status.yaml"
    write_file_atomic(target, "phase: Done\n", mode=0o600)

    assert target.read_text(encoding="utf-8") == "phase: Done\n"
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert [p.name for p in tmp_path.iterdir()] == ["status.yaml"]

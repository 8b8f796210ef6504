"""Materialize the per-resource Terraform workspace on disk."""

from __future__ import annotations

import os
from collections.abc import Sequence
from contextlib import suppress
from pathlib import Path

from machineshop._errors import WorkspaceBuildError
from machineshop._models import ResourceIdentity, Workspace

WORKSPACE_DIR_MODE = 0o755
WORKSPACE_FILE_MODE = 0o644
VARIABLES_FILE_NAME = "terraform.tfvars"


def write_file_atomic(path: Path, content: str, mode: int = WORKSPACE_FILE_MODE) -> None:
    """Write ``content`` to ``path`` atomically, replacing any existing file.

    Examples
    --------
    >>> write_file_atomic(Path("/tmp/demo.tf"), 'module "demo" {}\\n')
    """

    tmp_path = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content.encode("utf-8"))
            handle.flush()
            os.fsync(handle.fileno())
    except Exception:
        with suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise

    tmp_path.replace(path)
    os.chmod(path, mode)


def build_workspace(
    root: Path,
    identity: ResourceIdentity,
    module_call: str,
    variables: Sequence[str],
) -> Workspace:
    """Create the identity's workspace and write its two artefacts.

    Parameters
    ----------
    root
        Workspace root directory shared by all resources.
    identity
        Resource whose workspace is built.
    module_call
        Rendered module-call HCL written to ``<name>.tf``.
    variables
        Raw variable lines joined with ``\\n`` into ``terraform.tfvars``.

    Returns
    -------
    Workspace
        Paths of the directory and both files.

    Raises
    ------
    WorkspaceBuildError
        If the directory or a file cannot be written.

    Examples
    --------
    >>> ws = build_workspace(Path("/tmp/tf"), ResourceIdentity("demo"), "", ["x=1"])
    >>> ws.variables_file.name
    'terraform.tfvars'
    """

    directory = identity.workspace_dir(root)
    module_file = directory / f"{identity.name}.tf"
    variables_file = directory / VARIABLES_FILE_NAME
    try:
        directory.mkdir(mode=WORKSPACE_DIR_MODE, parents=True, exist_ok=True)
        write_file_atomic(module_file, module_call)
        write_file_atomic(variables_file, "\n".join(variables))
    except OSError as exc:
        msg = f"failed to build workspace {directory}: {exc.strerror or exc}"
        raise WorkspaceBuildError(msg) from exc

    return Workspace(
        directory=directory,
        module_file=module_file,
        variables_file=variables_file,
    )


__all__ = [
    "VARIABLES_FILE_NAME",
    "build_workspace",
    "write_file_atomic",
]

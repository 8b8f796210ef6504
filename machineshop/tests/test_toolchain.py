"""Tests for Terraform toolchain acquisition."""

from __future__ import annotations

import hashlib
import io
import os
import threading
import zipfile
from pathlib import Path

import httpx
import pytest

from machineshop._errors import (
    InvalidVersionError,
    ToolchainInstallError,
    ToolchainUnavailableError,
)
from machineshop._toolchain import ToolchainInstaller, ToolchainVersion, parse_checksums

RELEASES = "https://releases.example"
PLATFORM = ("linux", "amd64")


def _archive(member: str = "terraform", body: bytes = b"#!/bin/sh\necho terraform\n") -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        bundle.writestr(member, body)
    return buffer.getvalue()


class FakeReleases:
    """In-memory releases service serving one or more versions."""

    def __init__(self, archives: dict[str, bytes], *, checksums: dict[str, str] | None = None):
        self.archives = archives
        self.checksums = checksums or {}
        self.requests: list[str] = []
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request.url.path)
        for version, archive in self.archives.items():
            base = f"/terraform/{version}/terraform_{version}"
            if request.url.path == f"{base}_SHA256SUMS":
                digest = self.checksums.get(version, hashlib.sha256(archive).hexdigest())
                body = (
                    f"{'0' * 64}  terraform_{version}_darwin_arm64.zip\n"
                    f"{digest}  terraform_{version}_linux_amd64.zip\n"
                )
                return httpx.Response(200, text=body)
            if request.url.path == f"{base}_linux_amd64.zip":
                return httpx.Response(200, content=archive)
        return httpx.Response(404)

    def installer(self, install_dir: Path) -> ToolchainInstaller:
        transport = httpx.MockTransport(self.handler)
        return ToolchainInstaller(
            install_dir=install_dir,
            releases_url=RELEASES,
            platform=PLATFORM,
            client_factory=lambda: httpx.Client(base_url=RELEASES, transport=transport),
        )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1.5.0", "1.5.0"),
        ("v1.5.0", "1.5.0"),
        ("1.5", "1.5.0"),
        (" 1.6.0-beta1+build.7 ", "1.6.0-beta1"),
    ],
)
def test_version_parse_normalises(raw: str, expected: str) -> None:
    assert str(ToolchainVersion.parse(raw)) == expected


@pytest.mark.parametrize("raw", ["", "latest", "1", "1.x.0", ">=1.5.0"])
def test_version_parse_rejects_invalid(raw: str) -> None:
    with pytest.raises(InvalidVersionError):
        ToolchainVersion.parse(raw)


def test_parse_checksums() -> None:
    content = "abc  terraform_1.5.0_linux_amd64.zip\n\nDEF  terraform_1.5.0_darwin_arm64.zip\n"
    assert parse_checksums(content) == {
        "terraform_1.5.0_linux_amd64.zip": "abc",
        "terraform_1.5.0_darwin_arm64.zip": "def",
    }


def test_install_downloads_verifies_and_unpacks(tmp_path: Path) -> None:
    releases = FakeReleases({"1.5.0": _archive()})

    handle = releases.installer(tmp_path).install("v1.5.0")

    assert handle.version == "1.5.0"
    assert handle.executable == tmp_path / "1.5.0" / "terraform"
    assert os.access(handle.executable, os.X_OK)
    assert releases.requests == [
        "/terraform/1.5.0/terraform_1.5.0_SHA256SUMS",
        "/terraform/1.5.0/terraform_1.5.0_linux_amd64.zip",
    ]
    assert [p.name for p in tmp_path.iterdir()] == ["1.5.0"], "staging dir left behind"


def test_install_reuses_cached_executable(tmp_path: Path) -> None:
    releases = FakeReleases({"1.5.0": _archive()})
    installer = releases.installer(tmp_path)
    installer.install("1.5.0")

    handle = installer.install("1.5")

    assert handle.executable == tmp_path / "1.5.0" / "terraform"
    assert len(releases.requests) == 2, "second install must not download"


def test_concurrent_installs_share_one_download(tmp_path: Path) -> None:
    releases = FakeReleases({"1.5.0": _archive()})
    installer = releases.installer(tmp_path)
    handles = []

    threads = [
        threading.Thread(target=lambda: handles.append(installer.install("1.5.0")))
        for _ in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(handles) == 4
    assert len({handle.executable for handle in handles}) == 1
    assert releases.requests.count("/terraform/1.5.0/terraform_1.5.0_linux_amd64.zip") == 1


def test_unknown_version_is_unavailable(tmp_path: Path) -> None:
    releases = FakeReleases({"1.5.0": _archive()})

    with pytest.raises(ToolchainUnavailableError, match="9.9.9"):
        releases.installer(tmp_path).install("9.9.9")


def test_checksum_mismatch_fails_install(tmp_path: Path) -> None:
    releases = FakeReleases({"1.5.0": _archive()}, checksums={"1.5.0": "f" * 64})

    with pytest.raises(ToolchainInstallError, match="checksum mismatch"):
        releases.installer(tmp_path).install("1.5.0")
    assert not (tmp_path / "1.5.0").exists()


def test_archive_without_binary_fails_install(tmp_path: Path) -> None:
    releases = FakeReleases({"1.5.0": _archive(member="README.md")})

    with pytest.raises(ToolchainInstallError, match="does not contain terraform"):
        releases.installer(tmp_path).install("1.5.0")


def test_server_error_fails_install(tmp_path: Path) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    installer = ToolchainInstaller(
        install_dir=tmp_path,
        platform=PLATFORM,
        client_factory=lambda: httpx.Client(transport=transport),
    )

    with pytest.raises(ToolchainInstallError, match="HTTP 503"):
        installer.install("1.5.0")

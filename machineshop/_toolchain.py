"""Acquire exact Terraform versions from the HashiCorp releases service.

Each version is installed once into ``<install_dir>/<version>/terraform`` and
reused by later passes. Concurrent requests for the same version share a
single download; different versions install in parallel.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import re
import shutil
import sys
import tempfile
import zipfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from machineshop._errors import (
    InvalidVersionError,
    ToolchainInstallError,
    ToolchainUnavailableError,
)
from machineshop._locks import KeyedLock
from machineshop._models import ToolchainHandle

logger = logging.getLogger(__name__)

DEFAULT_RELEASES_URL = "https://releases.hashicorp.com"
DEFAULT_INSTALL_TIMEOUT = 300.0
PRODUCT = "terraform"

VERSION_PATTERN = re.compile(
    r"^v?(\d+)\.(\d+)(?:\.(\d+))?(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)

_OS_NAMES = {
    "linux": "linux",
    "darwin": "darwin",
    "win32": "windows",
    "freebsd": "freebsd",
    "openbsd": "openbsd",
}
_ARCH_NAMES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
    "armv6l": "arm",
}


@dataclass(frozen=True, slots=True)
class ToolchainVersion:
    """An exact semantic version.

    Examples
    --------
    >>> str(ToolchainVersion.parse("v1.5"))
    '1.5.0'
    >>> str(ToolchainVersion.parse("1.6.0-beta1+build.7"))
    '1.6.0-beta1'
    """

    major: int
    minor: int
    patch: int
    prerelease: str | None = None

    @classmethod
    def parse(cls, value: str) -> ToolchainVersion:
        """Parse ``value`` or raise :class:`InvalidVersionError`."""
        match = VERSION_PATTERN.match(value.strip()) if isinstance(value, str) else None
        if match is None:
            msg = f"terraform version {value!r} is not a valid semantic version"
            raise InvalidVersionError(msg)
        major, minor, patch, prerelease = match.groups()
        return cls(
            major=int(major),
            minor=int(minor),
            patch=int(patch or 0),
            prerelease=prerelease,
        )

    def __str__(self) -> str:
        core = f"{self.major}.{self.minor}.{self.patch}"
        return f"{core}-{self.prerelease}" if self.prerelease else core


def current_platform() -> tuple[str, str]:
    """Return the releases-service ``(os, arch)`` pair for this host.

    Raises
    ------
    ToolchainUnavailableError
        If the host platform has no published builds.
    """
    os_name = next(
        (name for prefix, name in _OS_NAMES.items() if sys.platform.startswith(prefix)),
        None,
    )
    arch = _ARCH_NAMES.get(os.uname().machine.lower()) if hasattr(os, "uname") else None
    if arch is None and os_name == "windows":
        arch = "amd64"
    if os_name is None or arch is None:
        msg = f"no terraform builds are published for platform {sys.platform}"
        raise ToolchainUnavailableError(msg)
    return os_name, arch


def parse_checksums(content: str) -> dict[str, str]:
    """Parse a ``SHA256SUMS`` document into ``{filename: digest}``.

    Examples
    --------
    >>> parse_checksums("abc123  terraform_1.5.0_linux_amd64.zip\\n")
    {'terraform_1.5.0_linux_amd64.zip': 'abc123'}
    """
    checksums: dict[str, str] = {}
    for line in content.splitlines():
        digest, _, filename = line.strip().partition("  ")
        if digest and filename:
            checksums[filename.strip()] = digest.lower()
    return checksums


def _binary_name(os_name: str) -> str:
    return f"{PRODUCT}.exe" if os_name == "windows" else PRODUCT


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


@dataclass(slots=True)
class ToolchainInstaller:
    """Install and cache exact Terraform versions.

    Attributes
    ----------
    install_dir
        Root directory for cached installs.
    releases_url
        Base URL of the releases service.
    timeout
        Timeout in seconds for each HTTP request.
    platform
        ``(os, arch)`` override; detected from the host when ``None``.
    client_factory
        Builds the ``httpx.Client`` used for downloads.
    """

    install_dir: Path
    releases_url: str = DEFAULT_RELEASES_URL
    timeout: float = DEFAULT_INSTALL_TIMEOUT
    platform: tuple[str, str] | None = None
    client_factory: Callable[[], httpx.Client] | None = None
    _locks: KeyedLock = field(default_factory=KeyedLock, repr=False)

    def executable_path(self, version: ToolchainVersion) -> Path:
        """Return the cached executable path for ``version``."""
        os_name, _ = self.platform or current_platform()
        return self.install_dir / str(version) / _binary_name(os_name)

    def install(self, version: str) -> ToolchainHandle:
        """Return a handle for ``version``, downloading it when not cached.

        Raises
        ------
        InvalidVersionError
            If ``version`` is not a semantic version.
        ToolchainUnavailableError
            If the releases service has no build for the version or platform.
        ToolchainInstallError
            If the download, verification or unpacking fails.
        """
        parsed = ToolchainVersion.parse(version)
        key = str(parsed)
        executable = self.executable_path(parsed)

        with self._locks.hold(key):
            if _is_executable(executable):
                logger.debug("Reusing cached terraform %s at %s", key, executable)
                return ToolchainHandle(version=key, executable=executable)

            logger.info("Installing terraform %s into %s", key, executable.parent)
            archive = self._fetch_archive(parsed)
            self._unpack(archive, parsed, executable)

        return ToolchainHandle(version=key, executable=executable)

    def _client(self) -> httpx.Client:
        if self.client_factory is not None:
            return self.client_factory()
        return httpx.Client(timeout=self.timeout, follow_redirects=True)

    def _download(self, client: httpx.Client, url: str, version: ToolchainVersion) -> bytes:
        try:
            response = client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == httpx.codes.NOT_FOUND:
                msg = f"terraform {version} is not available from {self.releases_url}"
                raise ToolchainUnavailableError(msg) from exc
            msg = f"download of {url} failed with HTTP {exc.response.status_code}"
            raise ToolchainInstallError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"download of {url} failed: {exc}"
            raise ToolchainInstallError(msg) from exc
        return response.content

    def _fetch_archive(self, version: ToolchainVersion) -> bytes:
        os_name, arch = self.platform or current_platform()
        base = f"{self.releases_url.rstrip('/')}/{PRODUCT}/{version}"
        archive_name = f"{PRODUCT}_{version}_{os_name}_{arch}.zip"
        sums_name = f"{PRODUCT}_{version}_SHA256SUMS"

        with self._client() as client:
            sums = self._download(client, f"{base}/{sums_name}", version)
            expected = parse_checksums(sums.decode("utf-8", errors="replace")).get(
                archive_name
            )
            if expected is None:
                msg = f"terraform {version} has no build for {os_name}/{arch}"
                raise ToolchainUnavailableError(msg)
            archive = self._download(client, f"{base}/{archive_name}", version)

        actual = hashlib.sha256(archive).hexdigest()
        if actual != expected:
            msg = f"checksum mismatch for {archive_name}: expected {expected}, got {actual}"
            raise ToolchainInstallError(msg)
        return archive

    def _unpack(self, archive: bytes, version: ToolchainVersion, executable: Path) -> None:
        target_dir = executable.parent
        try:
            self.install_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{version}-", dir=self.install_dir))
        except OSError as exc:
            msg = f"cannot prepare toolchain directory {self.install_dir}: {exc}"
            raise ToolchainInstallError(msg) from exc

        try:
            with zipfile.ZipFile(io.BytesIO(archive)) as bundle:
                member = bundle.getinfo(executable.name)
                staged = staging / executable.name
                staged.write_bytes(bundle.read(member))
            staged.chmod(0o755)
            staging.chmod(0o755)
            if target_dir.exists():
                shutil.rmtree(target_dir)
            os.replace(staging, target_dir)
        except (KeyError, zipfile.BadZipFile) as exc:
            msg = f"terraform {version} archive does not contain {executable.name}"
            raise ToolchainInstallError(msg) from exc
        except OSError as exc:
            msg = f"failed to install terraform {version}: {exc}"
            raise ToolchainInstallError(msg) from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)


__all__ = [
    "DEFAULT_RELEASES_URL",
    "ToolchainInstaller",
    "ToolchainVersion",
    "current_platform",
    "parse_checksums",
]

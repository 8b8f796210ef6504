from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    project_root = Path(__file__).resolve().parents[2]
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


@pytest.fixture
def vault_env() -> dict[str, str]:
    """Environment mapping with static-token Vault credentials."""
    return {
        "VAULT_ADDR": "https://vault.example",
        "VAULT_NAMESPACE": "admin",
        "VAULT_TOKEN": "hvs.static",
    }

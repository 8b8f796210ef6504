"""Resolve CLI inputs with environment fallback and typed conversion."""

from __future__ import annotations

import os
from collections import abc as cabc
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

type InputValue = str | Path | int | float


@dataclass(frozen=True, slots=True)
class InputResolution:
    """How to resolve one input when its CLI flag is absent.

    Attributes
    ----------
    env_key
        Environment variable consulted after the flag.
    default
        Value used when neither flag nor environment provides one.
    required
        Exit with ``<env_key> is required`` when nothing provides a value.
    convert
        Converter applied to environment strings (``Path``, ``int`` ...).
    """

    env_key: str
    default: InputValue | None = None
    required: bool = False
    convert: Callable[[str], InputValue] | None = None


def resolve_input(
    param_value: InputValue | None,
    resolution: InputResolution,
    env: cabc.Mapping[str, str] | None = None,
) -> InputValue | None:
    """Resolve input from parameter, environment variable, or default.

    Examples
    --------
    >>> resolve_input(None, InputResolution("WORKERS", convert=int), {"WORKERS": "8"})
    8
    """
    if param_value is not None:
        return param_value

    env_value = (env if env is not None else os.environ).get(resolution.env_key)
    if env_value is not None and env_value.strip():
        if resolution.convert is None:
            return env_value
        try:
            return resolution.convert(env_value.strip())
        except ValueError as exc:
            msg = f"{resolution.env_key} has an invalid value {env_value!r}: {exc}"
            raise SystemExit(msg) from exc

    if resolution.required:
        msg = f"{resolution.env_key} is required"
        raise SystemExit(msg)

    return resolution.default

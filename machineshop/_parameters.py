"""Parse ``key=value`` parameter entries declared on a resource."""

from __future__ import annotations

from collections.abc import Iterable

from machineshop._errors import ParameterError


def split_parameter(entry: str, *, position: int | None = None) -> tuple[str, str]:
    """Split a ``key=value`` entry on the first ``=``.

    Parameters
    ----------
    entry
        Raw parameter entry.
    position
        Index of the entry in its list, used in error messages.

    Returns
    -------
    tuple[str, str]
        The key and the value. The value may itself contain ``=``.

    Raises
    ------
    ParameterError
        If the entry has no ``=`` or an empty key.

    Examples
    --------
    >>> split_parameter("url=https://example.com/?a=b")
    ('url', 'https://example.com/?a=b')
    """
    key, separator, value = entry.partition("=")
    key = key.strip()
    where = f" at position {position}" if position is not None else ""
    if not separator:
        msg = f"parameter entry{where} is not in key=value form"
        raise ParameterError(msg)
    if not key:
        msg = f"parameter entry{where} has an empty key"
        raise ParameterError(msg)
    return key, value


def parse_parameters(entries: Iterable[str]) -> dict[str, str]:
    """Build a parameter mapping from ``key=value`` entries.

    Later entries override earlier ones with the same key.

    Examples
    --------
    >>> parse_parameters(["region=eu-west-1", "region=eu-central-1", "size=2"])
    {'region': 'eu-central-1', 'size': '2'}
    """
    parameters: dict[str, str] = {}
    for position, entry in enumerate(entries):
        key, value = split_parameter(entry, position=position)
        parameters[key] = value
    return parameters


def validate_parameters(entries: Iterable[str]) -> None:
    """Raise :class:`ParameterError` if any entry is malformed."""
    for position, entry in enumerate(entries):
        split_parameter(entry, position=position)


__all__ = ["parse_parameters", "split_parameter", "validate_parameters"]

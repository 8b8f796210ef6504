"""Tests for ``key=value`` parameter parsing."""

from __future__ import annotations

import pytest

from machineshop._errors import ParameterError
from machineshop._parameters import parse_parameters, split_parameter, validate_parameters


def test_split_parameter_keeps_equals_in_value() -> None:
    assert split_parameter("conn=host=db;port=5432") == ("conn", "host=db;port=5432")


def test_split_parameter_strips_key_only() -> None:
    assert split_parameter(" region = eu-west-1") == ("region", " eu-west-1")


@pytest.mark.parametrize("entry", ["no-separator", "=value"])
def test_split_parameter_rejects_malformed_entries(entry: str) -> None:
    with pytest.raises(ParameterError, match="position 3"):
        split_parameter(entry, position=3)


def test_parse_parameters_last_write_wins() -> None:
    parameters = parse_parameters(["region=eu-west-1", "size=2", "region=us-east-1"])
    assert parameters == {"region": "us-east-1", "size": "2"}


def test_parse_parameters_allows_empty_values() -> None:
    assert parse_parameters(["tag="]) == {"tag": ""}


def test_validate_parameters_names_offending_position() -> None:
    with pytest.raises(ParameterError, match="position 1"):
        validate_parameters(["bucket=state", "broken"])

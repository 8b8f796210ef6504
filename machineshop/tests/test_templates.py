"""Tests for module-call template rendering."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from machineshop._errors import TemplateNotFoundError, TemplateSyntaxError
from machineshop._templates import (
    Delimiters,
    load_template,
    render_module_call,
    render_template,
)

MODULE_TEMPLATE = """module "network" {
  source = "git::https://example.com/modules/network.git"
  region = "{{ .region }}"
  cidr   = "{{cidr}}"
  tags   = "{{ tags }}"
}
"""


def test_render_substitutes_all_placeholder_forms() -> None:
    result = render_template(
        MODULE_TEMPLATE,
        {"region": "eu-west-1", "cidr": "10.0.0.0/16", "tags": "prod"},
    )

    assert 'region = "eu-west-1"' in result.text
    assert 'cidr   = "10.0.0.0/16"' in result.text
    assert 'tags   = "prod"' in result.text
    assert result.defaulted_keys == ()


def test_render_missing_keys_become_empty() -> None:
    result = render_template(MODULE_TEMPLATE, {"region": "eu-west-1"})

    assert 'cidr   = ""' in result.text
    assert result.defaulted_keys == ("cidr", "tags")


def test_render_is_deterministic() -> None:
    parameters = {"region": "eu-west-1"}
    assert render_template(MODULE_TEMPLATE, parameters) == render_template(
        MODULE_TEMPLATE, parameters
    )


def test_render_does_not_evaluate_expressions() -> None:
    with pytest.raises(TemplateSyntaxError, match="line 2"):
        render_template('a = 1\nb = "{{ .region | upper }}"', {"region": "x"})


def test_render_does_not_rescan_substituted_values() -> None:
    result = render_template("value = {{ a }}", {"a": "{{ b }}", "b": "nope"})
    assert result.text == "value = {{ b }}"


def test_render_with_custom_delimiters() -> None:
    result = render_template(
        'region = "<< region >>" # {{ untouched }}',
        {"region": "eu-west-1"},
        Delimiters(left="<<", right=">>"),
    )
    assert result.text == 'region = "eu-west-1" # {{ untouched }}'


def test_load_template_rejects_escaping_names(tmp_path: Path) -> None:
    (tmp_path / "secret.txt").write_text("x", encoding="utf-8")
    templates = tmp_path / "templates"
    templates.mkdir()

    for name in ("../secret.txt", str(tmp_path / "secret.txt"), ""):
        with pytest.raises(TemplateNotFoundError):
            load_template(templates, name)


def test_load_template_missing_file(tmp_path: Path) -> None:
    with pytest.raises(TemplateNotFoundError, match="not found"):
        load_template(tmp_path, "module.tf.tmpl")


def test_render_module_call_logs_defaulted_keys(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    (tmp_path / "module.tf.tmpl").write_text(MODULE_TEMPLATE, encoding="utf-8")

    with caplog.at_level(logging.INFO, logger="machineshop._templates"):
        text = render_module_call(tmp_path, "module.tf.tmpl", {"region": "eu-west-1"})

    assert 'region = "eu-west-1"' in text
    assert "cidr, tags" in caplog.text

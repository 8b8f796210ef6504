"""Render module-call templates with tolerant key substitution.

Placeholders are plain key lookups between a delimiter pair (``{{`` and
``}}`` by default): ``{{region}}``, ``{{ region }}`` and ``{{ .region }}``
are equivalent. A key missing from the parameters renders as an empty string
so partial parameter sets still produce a file. Nothing between delimiters is
ever evaluated.
"""

from __future__ import annotations

import logging
import re
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path

from machineshop._errors import TemplateNotFoundError, TemplateSyntaxError

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^\s*\.?([A-Za-z_][A-Za-z0-9_-]*)\s*$")


@dataclass(frozen=True, slots=True)
class Delimiters:
    """Opening and closing placeholder delimiters."""

    left: str = "{{"
    right: str = "}}"

    def __post_init__(self) -> None:
        if not self.left or not self.right:
            msg = "template delimiters must not be blank"
            raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class RenderResult:
    """Rendered template text plus the keys that fell back to empty values."""

    text: str
    defaulted_keys: tuple[str, ...]


def _placeholder_pattern(delimiters: Delimiters) -> re.Pattern[str]:
    left = re.escape(delimiters.left)
    right = re.escape(delimiters.right)
    return re.compile(f"{left}(.*?){right}", re.DOTALL)


def render_template(
    template: str,
    parameters: cabc.Mapping[str, object],
    delimiters: Delimiters | None = None,
) -> RenderResult:
    """Substitute placeholders in ``template`` with values from ``parameters``.

    Parameters
    ----------
    template
        Raw template text.
    parameters
        Mapping of placeholder keys to values. Values are rendered with
        ``str``.
    delimiters
        Placeholder delimiters; ``{{`` / ``}}`` when omitted.

    Returns
    -------
    RenderResult
        The rendered text and the sorted, de-duplicated keys that were absent.

    Raises
    ------
    TemplateSyntaxError
        If a placeholder holds anything other than a key name.

    Examples
    --------
    >>> render_template('region = "{{ .region }}"', {"region": "eu-west-1"}).text
    'region = "eu-west-1"'
    >>> render_template("size = {{size}}", {}).defaulted_keys
    ('size',)
    """
    pattern = _placeholder_pattern(delimiters or Delimiters())
    defaulted: set[str] = set()

    def substitute(match: re.Match[str]) -> str:
        expression = match.group(1)
        key_match = _KEY_PATTERN.match(expression)
        if key_match is None:
            line = template.count("\n", 0, match.start()) + 1
            msg = (
                f"unsupported template expression {expression.strip()!r} on line "
                f"{line}; only key lookups are allowed"
            )
            raise TemplateSyntaxError(msg)
        key = key_match.group(1)
        if key not in parameters:
            defaulted.add(key)
            return ""
        return str(parameters[key])

    text = pattern.sub(substitute, template)
    return RenderResult(text=text, defaulted_keys=tuple(sorted(defaulted)))


def load_template(template_dir: Path, name: str) -> str:
    """Read the template ``name`` from ``template_dir``.

    Raises
    ------
    TemplateNotFoundError
        If ``name`` escapes ``template_dir`` or does not exist.
    """
    rel = Path(name)
    if not name or rel.is_absolute() or ".." in rel.parts:
        msg = f"template name {name!r} must be a relative path inside the template directory"
        raise TemplateNotFoundError(msg)
    root = template_dir.resolve()
    path = (template_dir / rel).resolve()
    if not path.is_relative_to(root):
        msg = f"template {name!r} resolves outside {template_dir}"
        raise TemplateNotFoundError(msg)
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        msg = f"template {name!r} not found in {template_dir}"
        raise TemplateNotFoundError(msg) from exc
    except OSError as exc:
        msg = f"template {name!r} could not be read: {exc.strerror}"
        raise TemplateNotFoundError(msg) from exc


def render_module_call(
    template_dir: Path,
    name: str,
    parameters: cabc.Mapping[str, object],
    delimiters: Delimiters | None = None,
) -> str:
    """Load and render a module-call template, logging defaulted keys."""
    result = render_template(load_template(template_dir, name), parameters, delimiters)
    if result.defaulted_keys:
        logger.info(
            "Template %s rendered without values for: %s",
            name,
            ", ".join(result.defaulted_keys),
        )
    return result.text


__all__ = [
    "Delimiters",
    "RenderResult",
    "load_template",
    "render_module_call",
    "render_template",
]

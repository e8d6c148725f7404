"""The one place manifests are turned into text and back.

Every YAML the service produces goes through :func:`dump_manifest`, so
field order, quoting and indentation are identical whether the text came
from the form synthesizer or a cluster read. Edits written over existing
text go through :func:`rewrite_preserving` instead, which keeps the bytes
of every line the edit does not touch.
"""
from __future__ import annotations

import io
from collections.abc import Callable
from typing import Any

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError as RoundTripYAMLError
from ruamel.yaml.representer import RoundTripRepresenter
from ruamel.yaml.scalarstring import DoubleQuotedScalarString, LiteralScalarString, ScalarString

from kubeforge.exceptions import ManifestSyntaxError


class QuotedString(str):
    """A string that is always emitted double-quoted (cron schedules)."""


class ManifestDumper(yaml.SafeDumper):
    pass


def _represent_quoted(dumper: yaml.SafeDumper, data: QuotedString) -> yaml.ScalarNode:
    return dumper.represent_scalar("tag:yaml.org,2002:str", str(data), style='"')


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


ManifestDumper.add_representer(QuotedString, _represent_quoted)
ManifestDumper.add_representer(str, _represent_str)


def _quote_schedule(document: dict[str, Any]) -> dict[str, Any]:
    # cron expressions start with '*' or look like numbers; always quote them
    spec = document.get("spec")
    if document.get("kind") != "CronJob" or not isinstance(spec, dict):
        return document
    schedule = spec.get("schedule")
    if not isinstance(schedule, str) or isinstance(schedule, QuotedString):
        return document
    return {**document, "spec": {**spec, "schedule": QuotedString(schedule)}}


def dump_manifest(document: dict[str, Any]) -> str:
    document = _quote_schedule(document)
    return yaml.dump(
        document,
        Dumper=ManifestDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=4096,
    )


def load_manifest(text: str) -> Any:
    """Decode YAML (or JSON) text; syntax problems carry 1-based positions."""
    try:
        return yaml.safe_load(text)
    except yaml.MarkedYAMLError as exc:
        mark = exc.problem_mark or exc.context_mark
        problem = exc.problem or exc.context or "invalid YAML"
        if mark is not None:
            raise ManifestSyntaxError(
                f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {problem}",
                line=mark.line + 1,
                column=mark.column + 1,
            ) from exc
        raise ManifestSyntaxError(f"YAML syntax error: {problem}") from exc
    except yaml.YAMLError as exc:
        raise ManifestSyntaxError(f"YAML syntax error: {exc}") from exc


# ---------------------------------------------------------------------------
# Round-trip rewriting of existing text
# ---------------------------------------------------------------------------


class _ManifestRepresenter(RoundTripRepresenter):
    pass


def _represent_null(representer: RoundTripRepresenter, data: None) -> Any:
    # ruamel writes an empty value; keep the ``null`` dump_manifest emits
    return representer.represent_scalar("tag:yaml.org,2002:null", "null")


_ManifestRepresenter.add_representer(type(None), _represent_null)


def _layout(text: str) -> tuple[int, int, int]:
    """Guess ``(mapping indent, sequence indent, dash offset)`` of existing text.

    Falls back to the two-space, indentless layout dump_manifest writes.
    """
    mapping: int | None = None
    sequence: tuple[int, int] | None = None
    key_indent: int | None = None
    for line in text.splitlines():
        stripped = line.lstrip(" ")
        if not stripped or stripped.startswith("#"):
            continue
        indent = len(line) - len(stripped)
        if key_indent is not None:
            if stripped.startswith("- "):
                gap = len(stripped) - 1 - len(stripped[1:].lstrip(" "))
                if sequence is None and indent >= key_indent:
                    sequence = (indent - key_indent + 1 + gap, indent - key_indent)
            elif mapping is None and indent > key_indent:
                mapping = indent - key_indent
        if mapping is not None and sequence is not None:
            break
        # column of the key itself, past any "- " item markers
        column, content = indent, stripped
        while content.startswith("- "):
            rest = content[1:].lstrip(" ")
            column += len(content) - len(rest)
            content = rest
        key_indent = column if content.rstrip().endswith(":") else None
    seq, offset = sequence or (2, 0)
    return mapping or 2, seq, offset


def _round_trip_yaml(mapping: int, sequence: int, offset: int) -> YAML:
    rt = YAML()
    rt.Representer = _ManifestRepresenter
    rt.preserve_quotes = True
    rt.allow_duplicate_keys = True
    rt.width = 4096
    rt.indent(mapping=mapping, sequence=sequence, offset=offset)
    return rt


def _style_new_scalars(node: Any) -> None:
    """Give values the edit introduced the same style dump_manifest would."""
    if isinstance(node, dict):
        entries: list[tuple[Any, Any]] = list(node.items())
    elif isinstance(node, list):
        entries = list(enumerate(node))
    else:
        return
    for key, value in entries:
        if isinstance(value, str) and not isinstance(value, ScalarString) and "\n" in value:
            node[key] = LiteralScalarString(value)
        else:
            _style_new_scalars(value)


def _quote_schedule_in_place(document: Any) -> None:
    if not isinstance(document, dict) or document.get("kind") != "CronJob":
        return
    spec = document.get("spec")
    if not isinstance(spec, dict):
        return
    schedule = spec.get("schedule")
    if isinstance(schedule, str) and not isinstance(schedule, ScalarString):
        spec["schedule"] = DoubleQuotedScalarString(schedule)


def rewrite_preserving(text: str, edit: Callable[[Any], Any]) -> str:
    """Load ``text`` keeping comments, quoting and flow style, let ``edit``
    change the tree in place, and dump it back.

    Lines ``edit`` does not touch come back byte for byte, so a diff against
    ``text`` only shows what actually changed.
    """
    rt = _round_trip_yaml(*_layout(text))
    try:
        tree = rt.load(text)
    except RoundTripYAMLError as exc:
        raise ManifestSyntaxError(f"YAML syntax error: {exc}") from exc
    tree = edit(tree)
    _style_new_scalars(tree)
    _quote_schedule_in_place(tree)
    stream = io.StringIO()
    rt.dump(tree, stream)
    return stream.getvalue()

"""Three-way overlay used when an edited model is written back over the
manifest it was parsed from.

``previous`` is what the model looked like when it was read, ``fresh`` is
what it looks like now. Only the differences between the two are applied
to ``base``; everything else in ``base`` (status, resourceVersion, fields
the model has no notion of) is carried over untouched.

``base`` is changed in place so that a round-trip tree keeps the comments,
quoting and flow style attached to the entries that did not change.
"""
from __future__ import annotations

import copy
from typing import Any

# fields the API server refuses to change after creation
IMMUTABLE_SPEC_FIELDS = ("selector",)


def _named(items: list[Any]) -> dict[str, Any] | None:
    """Index a list by ``name`` when every entry has a distinct one."""
    index: dict[str, Any] = {}
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            return None
        if item["name"] in index:
            return None
        index[item["name"]] = item
    return index


def _overlay_list(base: list[Any], fresh: list[Any], previous: Any) -> list[Any]:
    base_index = _named(base)
    fresh_index = _named(fresh)
    if base_index is None or fresh_index is None:
        return copy.deepcopy(fresh)
    previous_index = _named(previous) if isinstance(previous, list) else None
    previous_index = previous_index or {}
    merged = []
    for name, item in fresh_index.items():
        if name in base_index:
            merged.append(overlay(base_index[name], item, previous_index.get(name)))
        else:
            merged.append(copy.deepcopy(item))
    if len(merged) == len(base) and all(a is b for a, b in zip(merged, base)):
        # same entries in the same order; keep the list object and its comments
        return base
    return merged


def overlay(base: Any, fresh: Any, previous: Any) -> Any:
    if isinstance(base, dict) and isinstance(fresh, dict):
        prev = previous if isinstance(previous, dict) else {}
        for key in list(base):
            if key in fresh:
                if key in prev and fresh[key] == prev[key]:
                    continue
                merged = overlay(base[key], fresh[key], prev.get(key))
                if merged is not base[key]:
                    base[key] = merged
            elif key in prev:
                # the model knew this field and no longer sets it
                del base[key]
        for key, value in fresh.items():
            if key not in base:
                base[key] = copy.deepcopy(value)
        return base
    if isinstance(base, list) and isinstance(fresh, list):
        return _overlay_list(base, fresh, previous)
    return copy.deepcopy(fresh)


def _pin_immutable(base: dict[str, Any], fresh: dict[str, Any], previous: dict[str, Any]) -> dict[str, Any]:
    """Make ``fresh`` agree with ``previous`` on fields ``base`` must keep."""
    base_spec, fresh_spec = base.get("spec"), fresh.get("spec")
    if not isinstance(base_spec, dict) or not isinstance(fresh_spec, dict):
        return fresh
    prev_spec = previous.get("spec") if isinstance(previous.get("spec"), dict) else {}
    pinned = dict(fresh_spec)
    for field in IMMUTABLE_SPEC_FIELDS:
        if field not in base_spec:
            continue
        if field in prev_spec:
            pinned[field] = prev_spec[field]
        else:
            pinned.pop(field, None)
    return {**fresh, "spec": pinned}


def overlay_document(base: dict[str, Any], fresh: dict[str, Any], previous: dict[str, Any]) -> dict[str, Any]:
    """Write the model changes into ``base`` (in place) and return it."""
    return overlay(base, _pin_immutable(base, fresh, previous), previous)

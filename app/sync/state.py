# app/sync/state.py
"""Typed shared-state values and the field-level merge used on both ends.

The shared state is a flat ``key -> primitive`` map. Known control fields are
type-checked against ``KNOWN_STATE_FIELDS``; any other identifier-shaped key
is accepted as long as its value is a string, finite number or boolean.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Mapping, Union

from app.constants import KNOWN_STATE_FIELDS, STATE_KEY_PATTERN

StateValue = Union[str, int, float, bool]
SharedState = Dict[str, StateValue]


class StateValidationError(ValueError):
    """Raised when a partial state update contains an invalid key or value."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"invalid state field {key!r}: {reason}")
        self.key = key
        self.reason = reason


def _is_primitive(value: Any) -> bool:
    if isinstance(value, bool) or isinstance(value, str):
        return True
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    return False


def validate_value(key: str, value: Any) -> StateValue:
    """Check a single field against the key pattern and the known-field schema."""
    if not isinstance(key, str) or not STATE_KEY_PATTERN.fullmatch(key):
        raise StateValidationError(str(key), "key must be a short identifier")
    if not _is_primitive(value):
        raise StateValidationError(key, "value must be a string, finite number or boolean")

    expected = KNOWN_STATE_FIELDS.get(key)
    if expected is not None:
        # bool is an int subclass; only bool fields may hold booleans
        if isinstance(value, bool) and bool not in expected:
            raise StateValidationError(key, f"expected {_type_names(expected)}")
        if not isinstance(value, expected):
            raise StateValidationError(key, f"expected {_type_names(expected)}")
    return value


def validate_partial(partial: Any) -> SharedState:
    """Return a validated copy of ``partial`` or raise StateValidationError."""
    if not isinstance(partial, Mapping):
        raise StateValidationError("state", "must be an object")
    return {key: validate_value(key, value) for key, value in partial.items()}


def merge_state(current: Mapping[str, StateValue], partial: Mapping[str, StateValue]) -> SharedState:
    """Shallow merge: every key in ``partial`` overwrites ``current``."""
    merged: SharedState = dict(current)
    merged.update(partial)
    return merged


def _type_names(types: tuple[type, ...]) -> str:
    names = {bool: "boolean", str: "string", int: "number", float: "number"}
    return " or ".join(sorted({names.get(t, t.__name__) for t in types}))

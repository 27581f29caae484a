"""Delta computation between desired and live task state.

Comparison rules:
- An expected value of None means "don't care" and never produces a change
- Empty equivalence: None, [], {} and "" are the same
- Boolean strings: "true"/"True" equal True
- Numeric strings: "100" equals 100; only plain integer or decimal literals
  are coerced, integers stay exact and non-finite values compare as text
- References compare by identity, never by inline definition
- Mappings and lists are compared element-wise with the same rules

These rules keep idempotent runs from reporting phantom drift when the cloud
API echoes values back in a slightly different shape.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel

from .model import Task, TaskRef

logger = logging.getLogger(__name__)

_INTEGER_RE = re.compile(r"[+-]?\d+")
_DECIMAL_RE = re.compile(r"[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?")


class Action(str, Enum):
    """Overall action computed for a task."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NOOP = "NoOp"


@dataclass(frozen=True)
class FieldChange:
    """A single field-level difference."""

    field: str
    actual: Any
    expected: Any

    def describe(self) -> str:
        return f"{self.field}: {_display(self.actual)} -> {_display(self.expected)}"


@dataclass(frozen=True)
class Delta:
    """Difference between desired and current state for one task.

    Computed fresh each run and consumed immediately by the executor.
    """

    action: Action
    changes: tuple[FieldChange, ...] = ()

    @property
    def has_changes(self) -> bool:
        return self.action != Action.NOOP

    @property
    def changed_fields(self) -> list[str]:
        return [change.field for change in self.changes]

    def describe(self) -> str:
        if not self.changes:
            return self.action.value
        details = ", ".join(change.describe() for change in self.changes)
        return f"{self.action.value} ({details})"


def _display(value: Any) -> str:
    if value is None:
        return "<unset>"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, TaskRef):
        return str(value)
    return repr(value)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (list, tuple, dict, str)) and len(value) == 0)


def _normalize_number(number: int | float) -> Any:
    if isinstance(number, int):
        return number
    # NaN never equals itself; non-finite values compare by spelling
    if not math.isfinite(number):
        return str(number)
    return int(number) if number.is_integer() else number


def _normalize_scalar(value: Any) -> Any:
    """Coerce boolean and numeric strings to their native type."""
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, str):
        stripped = value.strip()
        lowered = stripped.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        if _INTEGER_RE.fullmatch(stripped):
            return int(stripped)
        if _DECIMAL_RE.fullmatch(stripped):
            return _normalize_number(float(stripped))
        return stripped
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return _normalize_number(value)
    return value


def values_equal(actual: Any, expected: Any) -> bool:
    """Check semantic equality of an actual and an expected value."""
    if _is_empty(actual) and _is_empty(expected):
        return True

    if isinstance(expected, TaskRef) or isinstance(actual, TaskRef):
        actual_id = actual.id if isinstance(actual, TaskRef) else actual
        expected_id = expected.id if isinstance(expected, TaskRef) else expected
        return actual_id == expected_id

    if isinstance(expected, BaseModel) and isinstance(actual, BaseModel):
        return values_equal(actual.model_dump(), expected.model_dump())

    if isinstance(expected, dict) or isinstance(actual, dict):
        if not isinstance(expected, dict) or not isinstance(actual, dict):
            return False
        for key in set(actual) | set(expected):
            if not values_equal(actual.get(key), expected.get(key)):
                return False
        return True

    if isinstance(expected, (list, tuple)) or isinstance(actual, (list, tuple)):
        if not isinstance(expected, (list, tuple)) or not isinstance(actual, (list, tuple)):
            return False
        if len(actual) != len(expected):
            return False
        return all(values_equal(a, e) for a, e in zip(actual, expected, strict=True))

    return _normalize_scalar(actual) == _normalize_scalar(expected)


def build_changes(actual: Task | None, expected: Task) -> Delta:
    """Compute the delta that converges actual toward expected.

    Args:
        actual: Live state returned by find(), or None if not found.
        expected: Desired task.

    Returns:
        Delta with the overall action and field-level changes.
    """
    if expected.deleted:
        if actual is None:
            return Delta(Action.NOOP)
        return Delta(Action.DELETE)

    desired = expected.compare_fields()

    if actual is None:
        creates = tuple(
            FieldChange(field=name, actual=None, expected=value)
            for name, value in desired.items()
            if not _is_empty(value)
        )
        return Delta(Action.CREATE, creates)

    current = actual.compare_fields()
    changes: list[FieldChange] = []
    for name, value in desired.items():
        if value is None:
            # Unset desired field: don't care
            continue
        if not values_equal(current.get(name), value):
            changes.append(FieldChange(field=name, actual=current.get(name), expected=value))

    if not changes:
        return Delta(Action.NOOP)

    logger.debug(
        "Changes detected",
        extra={"task": str(expected.id), "fields": [c.field for c in changes]},
    )
    return Delta(Action.UPDATE, tuple(changes))

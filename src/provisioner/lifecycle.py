"""Lifecycle gate: decides whether a computed action may execute.

DESIGN:
- The task's own lifecycle applies unless an override rule matches
- Override rules match task kinds and names with glob patterns
- The gate default applies when neither the task nor a rule sets one
- First matching override wins

A validate-only lifecycle that computes a Create is a hard failure, not a
no-op: an unexpectedly missing resource must surface.

USE CASES:
- Sync everything, but only validate ResourceGroup/* owned by another team
- Warn about drift on ManagedIdentity/* without correcting it
- Ignore tasks for a resource that is being migrated by hand
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

from .changes import Action, Delta
from .config import WarnPolicy
from .model import Lifecycle, TaskId

if TYPE_CHECKING:
    from .model import Task

logger = logging.getLogger(__name__)

__all__ = [
    "GateDecision",
    "GateVerdict",
    "Lifecycle",
    "LifecycleGate",
    "LifecycleOverride",
    "LifecycleViolation",
    "create_lifecycle_gate_from_env",
]


class LifecycleViolation(Exception):
    """Raised when a task's lifecycle forbids its computed action."""

    def __init__(self, task_id: TaskId, lifecycle: Lifecycle, action: Action, reason: str) -> None:
        self.task_id = task_id
        self.lifecycle = lifecycle
        self.action = action
        super().__init__(reason)


class GateVerdict(str, Enum):
    """What the executor should do with a computed action."""

    PROCEED = "proceed"  # Apply the action (or plan it in dry run)
    SUPPRESS = "suppress"  # Report the drift, do not apply
    VIOLATION = "violation"  # Fail the task
    IGNORE = "ignore"  # Do not reconcile the task at all


@dataclass(frozen=True)
class GateDecision:
    """Result of gating one task's delta.

    Attributes:
        verdict: What to do with the action.
        lifecycle: The effective lifecycle used for the decision.
        reason: Human-readable explanation.
        warning: Set when drift is reported to the user.
    """

    verdict: GateVerdict
    lifecycle: Lifecycle
    reason: str
    warning: str | None = None


class LifecycleOverride(BaseModel):
    """A single lifecycle override rule.

    Examples:
        # Only validate the shared resource groups
        - kinds: ["ResourceGroup"]
          names: ["rg-shared-*"]
          lifecycle: ExistsAndValidates

        # Never touch identities
        - kinds: ["ManagedIdentity"]
          lifecycle: Ignore
    """

    model_config = {"extra": "ignore"}

    # Match criteria (at least one must be specified)
    kinds: list[str] = Field(default_factory=list)
    names: list[str] = Field(default_factory=list)

    lifecycle: Lifecycle

    # Documentation
    reason: str = ""

    @field_validator("kinds", "names")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Drop blank patterns."""
        return [pattern.strip() for pattern in v if pattern and pattern.strip()]

    def matches(self, task_id: TaskId) -> bool:
        """Check if this override matches the given task."""
        if not self.kinds and not self.names:
            return False

        if self.kinds and not self._matches_any_pattern(task_id.kind, self.kinds):
            return False

        return not (self.names and not self._matches_any_pattern(task_id.name, self.names))

    def _matches_any_pattern(self, value: str, patterns: list[str]) -> bool:
        """Check if value matches any of the patterns (case-insensitive glob)."""
        value_lower = value.lower()
        return any(
            re.match(self._glob_to_regex(pattern.lower()), value_lower) for pattern in patterns
        )

    def _glob_to_regex(self, pattern: str) -> str:
        """Convert glob pattern to regex.

        * -> .*
        ? -> .
        Other regex chars are escaped
        """
        escaped = ""
        for char in pattern:
            if char == "*":
                escaped += ".*"
            elif char == "?":
                escaped += "."
            elif char in r"\.[]{}()+^$|":
                escaped += "\\" + char
            else:
                escaped += char

        return f"^{escaped}$"


@dataclass
class LifecycleGate:
    """Applies lifecycle policy just before a computed action executes.

    Thread Safety:
        This class is stateless after construction and thread-safe.
    """

    default_lifecycle: Lifecycle = Lifecycle.SYNC
    overrides: list[LifecycleOverride] = field(default_factory=list)
    warn_policy: WarnPolicy = WarnPolicy.WARN_AND_CONTINUE

    def effective_lifecycle(self, task: Task) -> tuple[Lifecycle, str]:
        """Resolve the lifecycle for a task.

        Returns:
            Tuple of (lifecycle, reason).
        """
        task_id = task.id
        for override in self.overrides:
            if override.matches(task_id):
                reason = override.reason or f"Override: {override.lifecycle.value}"
                return override.lifecycle, reason

        if task.lifecycle is not None:
            return task.lifecycle, f"Task lifecycle: {task.lifecycle.value}"

        return self.default_lifecycle, f"Default lifecycle: {self.default_lifecycle.value}"

    def evaluate(self, task: Task, delta: Delta) -> GateDecision:
        """Decide whether the delta's action may execute for this task."""
        lifecycle, source = self.effective_lifecycle(task)
        action = delta.action

        if lifecycle == Lifecycle.IGNORE:
            return GateDecision(GateVerdict.IGNORE, lifecycle, source)

        if action == Action.NOOP:
            return GateDecision(GateVerdict.PROCEED, lifecycle, "No changes")

        match lifecycle:
            case Lifecycle.SYNC | Lifecycle.WARN_IF_INSUFFICIENT_ACCESS:
                return GateDecision(GateVerdict.PROCEED, lifecycle, source)

            case Lifecycle.EXISTS_AND_VALIDATES:
                if action == Action.CREATE:
                    reason = f"{task.id} does not exist; lifecycle {lifecycle.value} forbids creating it"
                else:
                    reason = (
                        f"{task.id} failed validation under lifecycle {lifecycle.value}: "
                        f"{delta.describe()}"
                    )
                return GateDecision(GateVerdict.VIOLATION, lifecycle, reason)

            case Lifecycle.EXISTS_AND_WARN_IF_CHANGES:
                if action == Action.CREATE:
                    reason = f"{task.id} does not exist; lifecycle {lifecycle.value} forbids creating it"
                    return GateDecision(GateVerdict.VIOLATION, lifecycle, reason)

                warning = f"{task.id} has drifted: {delta.describe()}"
                if self.warn_policy == WarnPolicy.WARN_AND_APPLY:
                    return GateDecision(
                        GateVerdict.PROCEED, lifecycle, "Drift applied per warn policy", warning
                    )
                return GateDecision(
                    GateVerdict.SUPPRESS, lifecycle, "Drift reported, not corrected", warning
                )

        return GateDecision(GateVerdict.VIOLATION, lifecycle, f"Unhandled lifecycle {lifecycle}")


def create_lifecycle_gate_from_env(
    warn_policy: WarnPolicy = WarnPolicy.WARN_AND_CONTINUE,
) -> LifecycleGate:
    """Create a LifecycleGate with configuration from environment.

    Environment Variables:
        DEFAULT_LIFECYCLE: Lifecycle for tasks that set none (default: Sync)
        LIFECYCLE_OVERRIDES: JSON list of override rules (optional)

    Args:
        warn_policy: Policy for warn-only lifecycles.

    Returns:
        Configured LifecycleGate.
    """
    import json
    import os

    default_value = os.environ.get("DEFAULT_LIFECYCLE", "")
    default_lifecycle = Lifecycle.SYNC
    if default_value:
        try:
            default_lifecycle = Lifecycle(default_value)
        except ValueError:
            logger.warning(
                f"Invalid DEFAULT_LIFECYCLE '{default_value}', using {Lifecycle.SYNC.value}"
            )

    overrides: list[LifecycleOverride] = []
    overrides_json = os.environ.get("LIFECYCLE_OVERRIDES", "")
    if overrides_json:
        try:
            overrides_data = json.loads(overrides_json)
            if isinstance(overrides_data, list):
                for item in overrides_data:
                    overrides.append(LifecycleOverride.model_validate(item))
        except ValueError as e:
            # ValueError covers json.JSONDecodeError and pydantic validation errors
            logger.warning(f"Failed to parse LIFECYCLE_OVERRIDES: {e}")

    return LifecycleGate(
        default_lifecycle=default_lifecycle,
        overrides=overrides,
        warn_policy=warn_policy,
    )

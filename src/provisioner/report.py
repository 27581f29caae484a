"""Run report: per-task terminal states and the overall outcome.

The report is built by the executor while a run is in flight and frozen once
the run ends. Results are listed in topological order so a plan reads the way
the run would apply it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .changes import Action, FieldChange
from .config import RunMode
from .model import Lifecycle, TaskId

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


class TaskState(str, Enum):
    """Scheduler state of a task within one run."""

    PENDING = "Pending"
    READY = "Ready"
    RUNNING = "Running"
    DONE = "Done"
    FAILED = "Failed"
    SKIPPED = "Skipped"


TERMINAL_STATES = frozenset({TaskState.DONE, TaskState.FAILED, TaskState.SKIPPED})


class Outcome(str, Enum):
    """What happened to a task, in more detail than its state."""

    APPLIED = "Applied"  # Changes were made
    PLANNED = "Planned"  # Dry run: changes would be made
    UNCHANGED = "Unchanged"  # Live state already matches
    WARNED = "Warned"  # Drift or access problem reported, not corrected
    IGNORED = "Ignored"  # Lifecycle Ignore
    SKIPPED = "Skipped"  # Never ran
    FAILED = "Failed"


_ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NOOP: " ",
}


@dataclass(frozen=True)
class TaskResult:
    """Terminal result of one task."""

    task_id: TaskId
    state: TaskState
    outcome: Outcome
    action: Action | None = None
    changes: tuple[FieldChange, ...] = ()
    reason: str = ""
    warnings: tuple[str, ...] = ()
    lifecycle: Lifecycle | None = None
    attempts: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.state == TaskState.DONE

    @classmethod
    def skipped(cls, task_id: TaskId, reason: str) -> TaskResult:
        now = datetime.now(UTC)
        return cls(
            task_id=task_id,
            state=TaskState.SKIPPED,
            outcome=Outcome.SKIPPED,
            reason=reason,
            start_time=now,
            end_time=now,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "task": str(self.task_id),
            "kind": self.task_id.kind,
            "name": self.task_id.name,
            "state": self.state.value,
            "outcome": self.outcome.value,
            "action": self.action.value if self.action else None,
            "changes": [
                {"field": c.field, "actual": _jsonable(c.actual), "expected": _jsonable(c.expected)}
                for c in self.changes
            ],
            "reason": self.reason,
            "warnings": list(self.warnings),
            "lifecycle": self.lifecycle.value if self.lifecycle else None,
            "attempts": self.attempts,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


@dataclass(frozen=True)
class ChangeSummary:
    """Counts of computed actions across a run."""

    create_count: int = 0
    update_count: int = 0
    delete_count: int = 0
    unchanged_count: int = 0

    @property
    def total_significant(self) -> int:
        return self.create_count + self.update_count + self.delete_count


@dataclass(frozen=True)
class RunReport:
    """Immutable outcome of one run."""

    mode: RunMode
    results: tuple[TaskResult, ...]
    start_time: datetime
    end_time: datetime
    cancelled: bool = False
    cancel_reason: str | None = None
    version: str = PROVISIONER_VERSION

    @property
    def success(self) -> bool:
        """True only if every task reached Done."""
        return all(result.state == TaskState.DONE for result in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def failed(self) -> list[TaskResult]:
        return [r for r in self.results if r.state == TaskState.FAILED]

    @property
    def skipped(self) -> list[TaskResult]:
        return [r for r in self.results if r.state == TaskState.SKIPPED]

    @property
    def warnings(self) -> list[str]:
        return [warning for r in self.results for warning in r.warnings]

    def get(self, task_id: TaskId) -> TaskResult | None:
        for result in self.results:
            if result.task_id == task_id:
                return result
        return None

    def __getitem__(self, task_id: TaskId) -> TaskResult:
        result = self.get(task_id)
        if result is None:
            raise KeyError(task_id)
        return result

    def summary(self) -> ChangeSummary:
        counts = {action: 0 for action in Action}
        for result in self.results:
            if result.outcome in (Outcome.APPLIED, Outcome.PLANNED) and result.action is not None:
                counts[result.action] += 1
            elif result.outcome == Outcome.UNCHANGED:
                counts[Action.NOOP] += 1
        return ChangeSummary(
            create_count=counts[Action.CREATE],
            update_count=counts[Action.UPDATE],
            delete_count=counts[Action.DELETE],
            unchanged_count=counts[Action.NOOP],
        )

    def to_dict(self) -> dict[str, Any]:
        summary = self.summary()
        return {
            "version": self.version,
            "mode": self.mode.value,
            "success": self.success,
            "exit_code": self.exit_code,
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "summary": {
                "create": summary.create_count,
                "update": summary.update_count,
                "delete": summary.delete_count,
                "unchanged": summary.unchanged_count,
                "failed": len(self.failed),
                "skipped": len(self.skipped),
            },
            "tasks": [result.to_dict() for result in self.results],
        }

    def render_plan(self) -> str:
        """Human-readable list of actions, one block per task."""
        summary = self.summary()
        verb = "Plan" if self.mode == RunMode.DRY_RUN else "Applied"
        lines = [
            f"{verb}: {summary.create_count} to create, {summary.update_count} to update, "
            f"{summary.delete_count} to delete, {summary.unchanged_count} unchanged"
        ]

        for result in self.results:
            if result.state == TaskState.FAILED:
                lines.append(f"  ! {result.task_id}: failed: {result.reason}")
                continue
            if result.state == TaskState.SKIPPED:
                lines.append(f"  ? {result.task_id}: skipped: {result.reason}")
                continue
            if result.outcome == Outcome.IGNORED:
                lines.append(f"    {result.task_id} (ignored)")
                continue

            symbol = _ACTION_SYMBOLS.get(result.action, " ")
            suffix = ""
            if result.outcome == Outcome.WARNED:
                suffix = " (drift reported, not applied)"
            lines.append(f"  {symbol} {result.task_id}{suffix}")
            if result.action in (Action.UPDATE, Action.CREATE):
                for change in result.changes:
                    lines.append(f"      {change.describe()}")
            for warning in result.warnings:
                lines.append(f"      warning: {warning}")

        if self.cancelled:
            lines.append(f"Run cancelled: {self.cancel_reason}")
        if self.failed or self.skipped:
            lines.append(f"{len(self.failed)} failed, {len(self.skipped)} skipped")
        return "\n".join(lines)

    def raise_for_status(self) -> None:
        """Raise if the run did not fully succeed.

        Raises:
            CancellationError: If the run was cancelled.
            ReconcileError: If any task failed or was skipped.
        """
        if self.success:
            return

        from .executor import CancellationError
        from .reconcile import ReconcileError

        if self.cancelled:
            raise CancellationError(self.cancel_reason or "cancelled")

        failed = ", ".join(str(r.task_id) for r in self.failed) or "none"
        raise ReconcileError(
            None,
            RuntimeError(
                f"{len(self.failed)} task(s) failed ({failed}), {len(self.skipped)} skipped"
            ),
        )


@dataclass
class ReportBuilder:
    """Mutable collector the executor feeds while a run is in flight."""

    mode: RunMode
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    _results: dict[TaskId, TaskResult] = field(default_factory=dict)

    def record(self, result: TaskResult) -> None:
        if result.task_id in self._results:
            raise ValueError(f"Result for {result.task_id} already recorded")
        self._results[result.task_id] = result

    def has_result(self, task_id: TaskId) -> bool:
        return task_id in self._results

    def __len__(self) -> int:
        return len(self._results)

    def build(
        self,
        order: list[TaskId],
        cancelled: bool = False,
        cancel_reason: str | None = None,
    ) -> RunReport:
        """Freeze the collected results in the given order."""
        missing = [task_id for task_id in order if task_id not in self._results]
        if missing:
            raise ValueError(f"No result recorded for {', '.join(str(t) for t in missing)}")

        return RunReport(
            mode=self.mode,
            results=tuple(self._results[task_id] for task_id in order),
            start_time=self.start_time,
            end_time=datetime.now(UTC),
            cancelled=cancelled,
            cancel_reason=cancel_reason,
        )

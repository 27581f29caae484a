"""Per-task reconciliation: find, diff, gate, render.

TaskReconciler drives one task through the reconciler protocol and always
returns a TaskResult; task-level errors are captured, never raised, so that
one failing task cannot crash the run.

Blocking find()/render() bodies run on the executor's thread pool with a
per-call timeout. TryAgainLater is retried with exponential backoff and
jitter, the same way transient deployment failures are retried elsewhere.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable
from concurrent.futures import Executor as PoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from .changes import Action, Delta, build_changes
from .cloud import CloudAccessor, TryAgainLater, is_access_denied
from .config import ExecutorConfig, RunMode
from .lifecycle import GateVerdict, Lifecycle, LifecycleGate, LifecycleViolation
from .model import InvalidChangeError, Task, TaskId, TaskRef
from .report import Outcome, TaskResult, TaskState
from .security import log_security_audit_event
from .taskset import TaskSet

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReconcileError(Exception):
    """A task's find/render call failed.

    Attributes:
        task_id: The failing task, or None for a run-level summary.
        cause: The underlying exception.
    """

    def __init__(self, task_id: TaskId | None, cause: BaseException) -> None:
        self.task_id = task_id
        self.cause = cause
        detail = str(cause) or type(cause).__name__
        prefix = f"{task_id}: " if task_id is not None else ""
        super().__init__(f"{prefix}{detail}")


@dataclass
class RunContext:
    """What a task sees while it reconciles.

    Attributes:
        cloud: Injected cloud-state accessor.
        mode: Dry run or apply.
        tasks: The resolved task set, for looking up referenced tasks.
        subscription_id: Target subscription for resource IDs.
        location: Default location for tasks that set none.
    """

    cloud: CloudAccessor
    mode: RunMode = RunMode.APPLY
    tasks: TaskSet = field(default_factory=TaskSet)
    subscription_id: str = ""
    location: str = ""

    @property
    def dry_run(self) -> bool:
        return self.mode == RunMode.DRY_RUN

    def lookup(self, ref: TaskRef | TaskId) -> Task:
        return self.tasks.lookup(ref)


@dataclass
class _Attempts:
    count: int = 0


class TaskReconciler:
    """Reconciles single tasks against live state."""

    def __init__(
        self,
        context: RunContext,
        gate: LifecycleGate,
        config: ExecutorConfig,
        pool: PoolExecutor | None = None,
    ) -> None:
        self._context = context
        self._gate = gate
        self._config = config
        self._pool = pool

    async def reconcile(self, task: Task) -> TaskResult:
        """Reconcile one task. Never raises for task-level errors."""
        task_id = task.id
        start_time = datetime.now(UTC)
        lifecycle, source = self._gate.effective_lifecycle(task)
        attempts = _Attempts()

        def result(
            state: TaskState,
            outcome: Outcome,
            delta: Delta | None = None,
            reason: str = "",
            warnings: tuple[str, ...] = (),
        ) -> TaskResult:
            return TaskResult(
                task_id=task_id,
                state=state,
                outcome=outcome,
                action=delta.action if delta else None,
                changes=delta.changes if delta else (),
                reason=reason,
                warnings=warnings,
                lifecycle=lifecycle,
                attempts=attempts.count,
                start_time=start_time,
                end_time=datetime.now(UTC),
            )

        if lifecycle == Lifecycle.IGNORE:
            return result(TaskState.DONE, Outcome.IGNORED, reason=source)

        delta: Delta | None = None
        try:
            actual = await self._call(task_id, "find", attempts, task.find, self._context)
            delta = build_changes(actual, task)
            task.check_changes(actual, delta)

            decision = self._gate.evaluate(task, delta)
            warnings = (decision.warning,) if decision.warning else ()

            if decision.verdict == GateVerdict.VIOLATION:
                raise LifecycleViolation(task_id, lifecycle, delta.action, decision.reason)

            if decision.verdict == GateVerdict.IGNORE:
                return result(TaskState.DONE, Outcome.IGNORED, delta, decision.reason)

            if delta.action == Action.NOOP:
                return result(TaskState.DONE, Outcome.UNCHANGED, delta)

            if decision.verdict == GateVerdict.SUPPRESS:
                logger.warning(
                    "Drift reported, not corrected",
                    extra={"task": str(task_id), "changes": delta.describe()},
                )
                return result(TaskState.DONE, Outcome.WARNED, delta, decision.reason, warnings)

            if self._context.dry_run:
                return result(TaskState.DONE, Outcome.PLANNED, delta, warnings=warnings)

            await self._call(task_id, "render", attempts, task.render, self._context, actual, delta)
            log_security_audit_event(
                "provision",
                target_resource=str(task_id),
                action=delta.action.value,
                result="success",
            )
            return result(TaskState.DONE, Outcome.APPLIED, delta, warnings=warnings)

        except (LifecycleViolation, InvalidChangeError) as e:
            logger.error("Task rejected", extra={"task": str(task_id), "error": str(e)})
            return result(TaskState.FAILED, Outcome.FAILED, delta, str(e))

        except TimeoutError:
            reason = (
                f"{task_id}: timed out after {self._config.task_timeout_seconds}s; "
                "the cloud call may still complete in the background"
            )
            logger.error("Task timed out", extra={"task": str(task_id)})
            return result(TaskState.FAILED, Outcome.FAILED, delta, reason)

        except Exception as e:
            if lifecycle == Lifecycle.WARN_IF_INSUFFICIENT_ACCESS and is_access_denied(e):
                warning = f"{task_id}: insufficient access ({e})"
                logger.warning("Access denied, continuing", extra={"task": str(task_id)})
                log_security_audit_event(
                    "access_denied",
                    target_resource=str(task_id),
                    action=delta.action.value if delta else None,
                    result="denied",
                )
                return result(TaskState.DONE, Outcome.WARNED, delta, warning, (warning,))

            error = ReconcileError(task_id, e)
            logger.error(
                "Task failed",
                extra={"task": str(task_id), "error": str(e), "error_type": type(e).__name__},
            )
            return result(TaskState.FAILED, Outcome.FAILED, delta, str(error))

    async def _call(
        self,
        task_id: TaskId,
        operation: str,
        attempts: _Attempts,
        fn: Callable[..., T],
        *args: Any,
    ) -> T:
        """Run a blocking task method off the loop, with timeout and retry."""
        loop = asyncio.get_running_loop()
        max_attempts = self._config.max_task_attempts

        for attempt in range(1, max_attempts + 1):
            attempts.count += 1
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(self._pool, functools.partial(fn, *args)),
                    timeout=self._config.task_timeout_seconds,
                )
            except TryAgainLater as e:
                if attempt >= max_attempts:
                    raise

                # Exponential backoff with jitter
                backoff = self._config.retry_backoff_seconds * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = max(backoff + jitter, e.retry_after or 0.0)

                logger.warning(
                    f"{operation} asked to retry",
                    extra={
                        "task": str(task_id),
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

        # max_task_attempts >= 1 is enforced by ExecutorConfig
        raise AssertionError("Retry loop exited without a result")

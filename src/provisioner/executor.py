"""Topological executor with a fixed-size worker pool.

Per-task state machine:

    Pending -> Ready -> Running -> Done | Failed
    Pending -> Skipped   (a dependency failed or was skipped, or the run was cancelled)
    Ready   -> Skipped   (the run was cancelled before the task started)

Scheduling:
- Roots start Ready; a task becomes Ready when its last dependency is Done
- Ready tasks go onto one asyncio.Queue, in input order
- max_workers worker coroutines pull from the queue; each runs one task to
  completion before taking the next
- Blocking find()/render() bodies run on a thread pool of the same size

All scheduler state is owned by the event loop thread. Workers report back by
calling _complete() on that same loop, so no lock is needed.

Cancellation (user, deadline, stop-on-first-failure) sets one run-scoped
event: nothing new starts, in-flight tasks finish, everything that did not
run ends Skipped. Applied side effects are not rolled back.

Timeouts: a find()/render() call that exceeds the task timeout fails the
task and skips its dependents, but a thread cannot be interrupted, so the
underlying cloud call keeps running and may still create or change the
resource. The next run observes that state through find().
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from .cloud import CloudAccessor, CloudUnavailableError
from .config import ExecutorConfig
from .graph import DependencyGraph
from .lifecycle import LifecycleGate
from .model import TaskId
from .reconcile import RunContext, TaskReconciler
from .report import Outcome, ReportBuilder, RunReport, TaskResult, TaskState
from .taskset import TaskSet

logger = logging.getLogger(__name__)


class CancellationError(Exception):
    """The run was aborted by a signal, a deadline or stop-on-first-failure."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Run cancelled: {reason}")


@dataclass
class _RunState:
    """Scheduler bookkeeping for one run. Event loop thread only."""

    graph: DependencyGraph
    builder: ReportBuilder
    queue: asyncio.Queue[TaskId | None]
    cancel_event: asyncio.Event
    all_done: asyncio.Event
    states: dict[TaskId, TaskState] = field(default_factory=dict)
    remaining: dict[TaskId, int] = field(default_factory=dict)
    dependents: dict[TaskId, list[TaskId]] = field(default_factory=dict)
    cancel_reason: str | None = None

    def finished(self) -> int:
        return len(self.builder)


class Executor:
    """Runs a dependency graph against an injected cloud accessor.

    A timed-out task is reported Failed while its worker thread may still be
    finishing the cloud call; see the module docstring.

    Usage:
        executor = Executor(cloud, ExecutorConfig(mode=RunMode.DRY_RUN))
        report = await executor.run(graph)
        print(report.render_plan())
    """

    def __init__(
        self,
        cloud: CloudAccessor,
        config: ExecutorConfig | None = None,
        gate: LifecycleGate | None = None,
        *,
        subscription_id: str = "",
        location: str = "",
    ) -> None:
        self._cloud = cloud
        self._config = config or ExecutorConfig()
        self._gate = gate or LifecycleGate(warn_policy=self._config.warn_policy)
        self._subscription_id = subscription_id
        self._location = location

        # Set while a run is in flight; cancel() may come from any thread
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._run: _RunState | None = None

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    @property
    def gate(self) -> LifecycleGate:
        return self._gate

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """Cancel the run in progress. Safe to call from any thread."""
        with self._lock:
            loop, run = self._loop, self._run
        if loop is None or run is None:
            logger.debug("Cancel requested with no run in progress", extra={"reason": reason})
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._trigger_cancel(run, reason)
        else:
            loop.call_soon_threadsafe(self._trigger_cancel, run, reason)

    async def run(self, graph: DependencyGraph) -> RunReport:
        """Execute every task in the graph and return the frozen report.

        Raises:
            CyclicDependencyError: If the graph is not acyclic.
            CloudUnavailableError: If the cloud API cannot be reached.
        """
        order = graph.topological_sort()
        loop = asyncio.get_running_loop()
        workers_count = self._config.max_workers

        run = _RunState(
            graph=graph,
            builder=ReportBuilder(self._config.mode),
            queue=asyncio.Queue(),
            cancel_event=asyncio.Event(),
            all_done=asyncio.Event(),
            states={task_id: TaskState.PENDING for task_id in order},
            remaining={task_id: len(graph.dependencies_of(task_id)) for task_id in order},
            dependents=graph.dependents_map(),
        )

        logger.info(
            "Starting run",
            extra={
                "mode": self._config.mode.value,
                "tasks": len(order),
                "max_workers": workers_count,
            },
        )

        pool = ThreadPoolExecutor(max_workers=workers_count, thread_name_prefix="provisioner")
        deadline: asyncio.TimerHandle | None = None
        try:
            await self._check_connectivity(loop, pool)

            with self._lock:
                self._loop, self._run = loop, run

            context = RunContext(
                cloud=self._cloud,
                mode=self._config.mode,
                tasks=TaskSet(graph.tasks),
                subscription_id=self._subscription_id,
                location=self._location,
            )
            reconciler = TaskReconciler(context, self._gate, self._config, pool)

            if self._config.run_timeout_seconds is not None:
                deadline = loop.call_later(
                    self._config.run_timeout_seconds,
                    self._trigger_cancel,
                    run,
                    f"Run deadline of {self._config.run_timeout_seconds}s exceeded",
                )

            for task_id in graph.roots():
                self._mark_ready(run, task_id)
            if not order:
                run.all_done.set()

            workers = [
                asyncio.create_task(self._worker(run, reconciler), name=f"provisioner-worker-{i}")
                for i in range(workers_count)
            ]

            done_wait = asyncio.create_task(run.all_done.wait())
            cancel_wait = asyncio.create_task(run.cancel_event.wait())
            await asyncio.wait({done_wait, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)

            # Workers drain whatever is queued (skipping it if cancelled), then stop
            for _ in workers:
                run.queue.put_nowait(None)
            await asyncio.gather(*workers)

            for waiter in (done_wait, cancel_wait):
                if not waiter.done():
                    waiter.cancel()

        finally:
            if deadline is not None:
                deadline.cancel()
            with self._lock:
                self._loop, self._run = None, None
            pool.shutdown(wait=False, cancel_futures=True)

        # A cancel that lands after the last task finished changes nothing
        cancelled = run.cancel_reason is not None and run.finished() < len(order)
        for task_id in order:
            if not run.builder.has_result(task_id):
                reason = f"Run cancelled: {run.cancel_reason}" if run.cancel_reason else "Not run"
                self._record(run, TaskResult.skipped(task_id, reason))

        report = run.builder.build(
            order,
            cancelled=cancelled,
            cancel_reason=run.cancel_reason if cancelled else None,
        )
        self._log_report(report)
        return report

    async def _check_connectivity(
        self, loop: asyncio.AbstractEventLoop, pool: ThreadPoolExecutor
    ) -> None:
        try:
            await asyncio.wait_for(
                loop.run_in_executor(pool, self._cloud.check_connectivity),
                timeout=self._config.task_timeout_seconds,
            )
        except CloudUnavailableError:
            raise
        except Exception as e:
            raise CloudUnavailableError(f"Cloud connectivity check failed: {e}") from e

    async def _worker(self, run: _RunState, reconciler: TaskReconciler) -> None:
        while True:
            task_id = await run.queue.get()
            if task_id is None:
                return
            if run.cancel_event.is_set():
                # Stays Ready; marked Skipped when the run winds down
                continue

            run.states[task_id] = TaskState.RUNNING
            logger.debug("Task started", extra={"task": str(task_id)})
            try:
                result = await reconciler.reconcile(run.graph.task(task_id))
            except Exception as e:
                logger.exception("Unexpected error reconciling task", extra={"task": str(task_id)})
                result = TaskResult(
                    task_id=task_id,
                    state=TaskState.FAILED,
                    outcome=Outcome.FAILED,
                    reason=f"{task_id}: unexpected error: {e}",
                )
            self._complete(run, result)

    def _mark_ready(self, run: _RunState, task_id: TaskId) -> None:
        run.states[task_id] = TaskState.READY
        run.queue.put_nowait(task_id)

    def _record(self, run: _RunState, result: TaskResult) -> None:
        run.states[result.task_id] = result.state
        run.builder.record(result)
        self._log_result(result)

    def _complete(self, run: _RunState, result: TaskResult) -> None:
        """Record a finished task and release or skip its dependents."""
        self._record(run, result)
        task_id = result.task_id

        if result.state == TaskState.DONE:
            for dependent in run.dependents[task_id]:
                run.remaining[dependent] -= 1
                if (
                    run.remaining[dependent] == 0
                    and run.states[dependent] == TaskState.PENDING
                    and not run.cancel_event.is_set()
                ):
                    self._mark_ready(run, dependent)
        else:
            self._skip_dependents(run, task_id)
            if self._config.stop_on_first_failure:
                self._trigger_cancel(run, f"Stopping after first failure: {task_id}")

        if run.finished() == len(run.states):
            run.all_done.set()

    def _skip_dependents(self, run: _RunState, failed: TaskId) -> None:
        """Mark every transitive dependent that has not started as Skipped."""
        stack = list(reversed(run.dependents[failed]))
        while stack:
            dependent = stack.pop()
            if run.states[dependent] != TaskState.PENDING:
                continue
            self._record(run, TaskResult.skipped(dependent, f"Upstream task {failed} failed"))
            stack.extend(reversed(run.dependents[dependent]))

    def _trigger_cancel(self, run: _RunState, reason: str) -> None:
        if run.cancel_event.is_set():
            return
        run.cancel_reason = reason
        run.cancel_event.set()
        logger.warning("Run cancelled", extra={"reason": reason})

    def _log_result(self, result: TaskResult) -> None:
        extra = {
            "task": str(result.task_id),
            "kind": result.task_id.kind,
            "state": result.state.value,
            "outcome": result.outcome.value,
            "action": result.action.value if result.action else None,
            "attempts": result.attempts,
            "duration_seconds": result.duration_seconds,
        }
        if result.state == TaskState.DONE:
            logger.info("Task done", extra=extra)
        else:
            logger.warning(f"Task {result.state.value.lower()}", extra={**extra, "reason": result.reason})

    def _log_report(self, report: RunReport) -> None:
        summary = report.summary()
        log = logger.info if report.success else logger.error
        log(
            "Run finished",
            extra={
                "mode": report.mode.value,
                "success": report.success,
                "tasks": len(report.results),
                "create_count": summary.create_count,
                "update_count": summary.update_count,
                "delete_count": summary.delete_count,
                "unchanged_count": summary.unchanged_count,
                "failed": len(report.failed),
                "skipped": len(report.skipped),
                "cancelled": report.cancelled,
                "duration_seconds": report.duration_seconds,
            },
        )

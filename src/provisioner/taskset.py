"""Resolution pass that unifies definitions and references into a task set."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from .model import (
    Definition,
    DuplicateTaskError,
    InputError,
    Reference,
    Task,
    TaskEntry,
    TaskId,
    TaskRef,
    UnresolvedReferenceError,
)

logger = logging.getLogger(__name__)


class TaskSet:
    """Concrete task definitions keyed by identity, in stable input order.

    Build one with TaskSet.resolve(); every reference-only entry has been
    matched against a definition by then.
    """

    def __init__(self, tasks: dict[TaskId, Task] | None = None) -> None:
        self._tasks: dict[TaskId, Task] = dict(tasks or {})

    @classmethod
    def resolve(cls, entries: Iterable[TaskEntry | Task]) -> TaskSet:
        """Resolve document entries into a task set.

        Definitions are collected in order; inline definitions carried by
        references are lifted in right after the task that carries them.

        Raises:
            DuplicateTaskError: If two different definitions share an identity.
            UnresolvedReferenceError: If a Reference entry has no definition.
        """
        tasks: dict[TaskId, Task] = {}
        references: list[TaskId] = []

        def add(task: Task) -> None:
            task_id = task.id
            existing = tasks.get(task_id)
            if existing is not None:
                if existing is task:
                    return
                raise DuplicateTaskError(task_id)
            tasks[task_id] = task
            for ref in task.references():
                lift(ref)

        def lift(ref: TaskRef) -> None:
            target = ref.target
            if target is None:
                return
            existing = tasks.get(ref.id)
            if existing is None:
                add(target)
            elif existing is not target and existing != target:
                raise DuplicateTaskError(ref.id)

        for entry in entries:
            if isinstance(entry, Task):
                entry = Definition(entry)
            if isinstance(entry, Definition):
                add(entry.task)
            elif isinstance(entry, Reference):
                references.append(entry.id)
            else:
                raise InputError(f"Unsupported task entry: {entry!r}")

        for task_id in references:
            if task_id not in tasks:
                raise UnresolvedReferenceError(task_id)

        logger.debug(
            "Resolved task set",
            extra={"definitions": len(tasks), "references": len(references)},
        )
        return cls(tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __getitem__(self, task_id: TaskId) -> Task:
        return self._tasks[task_id]

    def get(self, task_id: TaskId) -> Task | None:
        return self._tasks.get(task_id)

    def ids(self) -> list[TaskId]:
        return list(self._tasks)

    def lookup(self, ref: TaskRef | TaskId) -> Task:
        """Return the definition a reference points at.

        Raises:
            UnresolvedReferenceError: If nothing in the set matches.
        """
        task_id = ref.id if isinstance(ref, TaskRef) else ref
        task = self._tasks.get(task_id)
        if task is None:
            raise UnresolvedReferenceError(task_id)
        return task

    def kinds(self) -> list[str]:
        return sorted({task_id.kind for task_id in self._tasks})

"""Task and reference model.

A task is a declarative description of one desired infrastructure object.
Tasks cite each other through TaskRef values. In a task document a reference
can be a bare name, "Kind/name", a {"name": ...} mapping or a full inline
definition; all of them are coerced into a TaskRef at validation time.

At the document boundary each entry is a tagged variant:
- Definition: a full task definition with its fields
- Reference: identity only, resolved later by TaskSet.resolve()

Dependencies are not stored. Each task declares the fields holding references
(reference_fields) and dependencies() derives the identity set every run.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, ClassVar, NamedTuple

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

if TYPE_CHECKING:
    from .changes import Delta
    from .reconcile import RunContext

logger = logging.getLogger(__name__)

# Task names follow the most permissive Azure resource name limit
MAX_TASK_NAME_LENGTH = 260

# Fields every task carries that never take part in diffing
BASE_FIELDS: frozenset[str] = frozenset({"name", "lifecycle", "deleted", "depends_on"})


class Lifecycle(str, Enum):
    """Policy constraining which reconciliation actions may execute."""

    SYNC = "Sync"  # Create, update and delete freely
    IGNORE = "Ignore"  # Do not reconcile at all
    WARN_IF_INSUFFICIENT_ACCESS = "WarnIfInsufficientAccess"  # Access denied is a warning
    EXISTS_AND_VALIDATES = "ExistsAndValidates"  # Must exist and match, never changed
    EXISTS_AND_WARN_IF_CHANGES = "ExistsAndWarnIfChanges"  # Must exist, drift is reported


class InputError(Exception):
    """Raised when the input task set is invalid. Fatal before any task runs."""

    pass


class UnknownKindError(InputError):
    """Raised when a document names a task kind that is not registered."""

    pass


class UnresolvedReferenceError(InputError):
    """Raised when a reference-only task never resolves to a definition."""

    def __init__(self, task_id: TaskId, referenced_by: TaskId | None = None) -> None:
        self.task_id = task_id
        self.referenced_by = referenced_by
        message = f"Reference to {task_id.kind} '{task_id.name}' does not resolve to a definition"
        if referenced_by is not None:
            message += f" (referenced by {referenced_by})"
        super().__init__(message)


class DuplicateTaskError(InputError):
    """Raised when two definitions share the same (kind, name)."""

    def __init__(self, task_id: TaskId) -> None:
        self.task_id = task_id
        super().__init__(f"Duplicate definition of {task_id.kind} '{task_id.name}'")


class InvalidChangeError(ValueError):
    """Raised by check_changes when a computed change is not allowed."""

    pass


class TaskId(NamedTuple):
    """Stable identity of a task within one run."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"

    @classmethod
    def parse(cls, value: str, default_kind: str | None = None) -> TaskId:
        """Parse "Kind/name", or a bare name when default_kind is given.

        Raises:
            InputError: If the value has no kind and none can be inferred.
        """
        value = value.strip()
        if "/" in value:
            kind, _, name = value.partition("/")
        elif default_kind:
            kind, name = default_kind, value
        else:
            raise InputError(f"Reference '{value}' must be written as Kind/name")

        if not kind or not name:
            raise InputError(f"Invalid task reference: '{value}'")
        return cls(kind, name)


class TaskRef(BaseModel):
    """A typed pointer from one task's field to another task's identity.

    target holds an inline definition when the reference was written as a
    full object. It is excluded from serialization and equality.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    target: Any = Field(default=None, exclude=True, repr=False)

    @property
    def id(self) -> TaskId:
        return TaskId(self.kind, self.name)

    def __str__(self) -> str:
        return str(self.id)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TaskRef):
            return self.id == other.id
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.id)


def _coerce_reference(kind: str | None, value: Any) -> Any:
    """Turn any supported reference shorthand into a TaskRef."""
    if isinstance(value, TaskRef):
        if kind and value.kind != kind:
            raise ValueError(f"expected a reference to {kind}, got {value.kind}")
        return value

    if isinstance(value, Task):
        if kind and value.kind != kind:
            raise ValueError(f"expected a {kind} task, got {value.kind}")
        if not value.name:
            raise ValueError(f"inline {value.kind} definition must have a name")
        return TaskRef(kind=value.kind, name=value.name, target=value)

    if isinstance(value, str):
        try:
            task_id = TaskId.parse(value, default_kind=kind)
        except InputError as e:
            raise ValueError(str(e)) from e
        if kind and task_id.kind != kind:
            raise ValueError(f"expected a reference to {kind}, got {task_id.kind}")
        return TaskRef(kind=task_id.kind, name=task_id.name)

    if isinstance(value, dict):
        ref_kind = value.get("kind") or kind
        if not ref_kind:
            raise ValueError("reference mapping must name its kind")
        if kind and ref_kind != kind:
            raise ValueError(f"expected a reference to {kind}, got {ref_kind}")

        if set(value) <= {"kind", "name"}:
            if not value.get("name"):
                raise ValueError(f"reference to {ref_kind} must have a name")
            return TaskRef(kind=ref_kind, name=value["name"])

        # Full inline definition of the referenced task
        try:
            task_class = get_task_class(ref_kind)
        except UnknownKindError as e:
            raise ValueError(str(e)) from e
        body = {k: v for k, v in value.items() if k != "kind"}
        return _coerce_reference(kind, task_class.model_validate(body))

    raise ValueError(f"cannot use {type(value).__name__} as a task reference")


def reference_to(kind: str | None = None) -> Any:
    """Build a TaskRef field type accepting the shorthand forms for kind.

    Example:
        ResourceGroupRef = reference_to("ResourceGroup")

        class VirtualNetwork(Task):
            resource_group: ResourceGroupRef
    """
    return Annotated[TaskRef, BeforeValidator(functools.partial(_coerce_reference, kind))]


# Reference to a task of any kind, written as "Kind/name"
AnyTaskRef = reference_to(None)


# =============================================================================
# Task base class and kind registry
# =============================================================================

_TASK_KINDS: dict[str, type[Task]] = {}


class Task(BaseModel):
    """Base class for every task kind.

    Subclasses set kind, declare their reference_fields and implement
    find() and render(). Everything else has a working default.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    kind: ClassVar[str] = ""

    # Fields holding TaskRef (or list of TaskRef) values; these become edges
    reference_fields: ClassVar[tuple[str, ...]] = ()

    # Fields that cannot change once the resource exists
    immutable_fields: ClassVar[frozenset[str]] = frozenset()

    name: str | None = Field(None, min_length=1, max_length=MAX_TASK_NAME_LENGTH)
    lifecycle: Lifecycle | None = None
    deleted: bool = False

    # Explicit ordering edges beyond those implied by reference fields
    # Example: dependsOn: ["ResourceGroup/rg-core"]
    depends_on: list[AnyTaskRef] = Field(default_factory=list, alias="dependsOn")

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        kind = cls.__dict__.get("kind")
        if not kind:
            return
        existing = _TASK_KINDS.get(kind)
        if existing is not None and existing is not cls:
            logger.debug(
                "Task kind re-registered",
                extra={"kind": kind, "previous": existing.__qualname__, "new": cls.__qualname__},
            )
        _TASK_KINDS[kind] = cls

    @property
    def id(self) -> TaskId:
        """Identity of this task.

        Raises:
            InputError: If the task has no name.
        """
        if not self.name:
            raise InputError(f"{self.kind} task has no name")
        return TaskId(self.kind, self.name)

    def set_name(self, name: str) -> None:
        self.name = name

    def references(self) -> list[TaskRef]:
        """All references this task holds, in field declaration order."""
        refs: list[TaskRef] = []
        for field_name in self.reference_fields:
            value = getattr(self, field_name)
            if value is None:
                continue
            if isinstance(value, TaskRef):
                refs.append(value)
            else:
                refs.extend(value)
        refs.extend(self.depends_on)
        return refs

    def dependencies(self) -> set[TaskId]:
        """Identities that must be reconciled before this task."""
        return {ref.id for ref in self.references()}

    def compare_fields(self) -> dict[str, Any]:
        """Fields that describe the resource itself and take part in diffing."""
        skip = BASE_FIELDS | set(self.reference_fields)
        return {
            field_name: getattr(self, field_name)
            for field_name in type(self).model_fields
            if field_name not in skip
        }

    def find(self, context: RunContext) -> Task | None:
        """Return the live state matching this task's identity, or None.

        Must not mutate anything.
        """
        raise NotImplementedError(f"{self.kind} does not implement find()")

    def render(self, context: RunContext, actual: Task | None, delta: Delta) -> None:
        """Perform the API calls that converge live state toward this task."""
        raise NotImplementedError(f"{self.kind} does not implement render()")

    def check_changes(self, actual: Task | None, delta: Delta) -> None:
        """Validate a computed delta before it is gated or applied.

        Raises:
            InvalidChangeError: If an immutable field would change.
        """
        if actual is None:
            return
        blocked = sorted(c.field for c in delta.changes if c.field in self.immutable_fields)
        if blocked:
            raise InvalidChangeError(
                f"{self.id}: cannot change immutable field(s) {blocked} on an existing resource"
            )

    def __str__(self) -> str:
        return task_as_string(self)


def task_as_string(task: Task) -> str:
    """Readable one-line rendering of a task, e.g. for logs and plans."""
    parts = []
    for field_name, value in task:
        if field_name in ("name", "deleted", "depends_on") or value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, TaskRef):
            value = str(value)
        parts.append(f"{field_name}={value}")
    if task.deleted:
        parts.append("deleted=True")
    return f"{task.kind}/{task.name or '<unnamed>'} {{{', '.join(parts)}}}"


def get_task_class(kind: str) -> type[Task]:
    """Get the registered task class for a kind.

    Raises:
        UnknownKindError: If kind is not registered.
    """
    task_class = _TASK_KINDS.get(kind)
    if task_class is None:
        raise UnknownKindError(f"Unknown task kind '{kind}'. Valid kinds: {sorted(_TASK_KINDS)}")
    return task_class


def registered_kinds() -> list[str]:
    return sorted(_TASK_KINDS)


# =============================================================================
# Document boundary: Definition | Reference
# =============================================================================


@dataclass(frozen=True)
class Reference:
    """Identity-only entry; must resolve against a Definition."""

    id: TaskId


@dataclass(frozen=True)
class Definition:
    """Full task definition entry."""

    task: Task

    @property
    def id(self) -> TaskId:
        return self.task.id


TaskEntry = Definition | Reference


def format_validation_error(error: ValidationError) -> str:
    """Format pydantic validation errors one per line."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        lines.append(f"  - {loc}: {item['msg']}")
    return "\n".join(lines)


def parse_task(kind: str, data: Any, name: str | None = None) -> TaskEntry:
    """Parse one document entry into a Definition or a Reference.

    Args:
        kind: Task kind the entry is listed under.
        data: A bare name string, a mapping, or an already-built Task.
        name: Name derived from context (e.g. a mapping key), used when
            the entry itself carries none.

    Raises:
        InputError: If the entry cannot be interpreted or fails validation.
    """
    if isinstance(data, Task):
        if data.kind != kind:
            raise InputError(f"Expected a {kind} task, got {data.kind}")
        if data.name is None and name:
            data.set_name(name)
        return Definition(data)

    if isinstance(data, str):
        if not data.strip():
            raise InputError(f"Empty {kind} reference")
        return Reference(TaskId(kind, data.strip()))

    if data is None and name:
        # "name:" with no body in a mapping is a reference by name
        return Reference(TaskId(kind, name))

    if isinstance(data, dict):
        task_class = get_task_class(kind)
        try:
            task = task_class.model_validate(data)
        except ValidationError as e:
            label = f"{kind} '{data.get('name') or name or '<unnamed>'}'"
            raise InputError(
                f"Validation failed for {label}:\n{format_validation_error(e)}"
            ) from e
        if task.name is None:
            if not name:
                raise InputError(f"{kind} definition has no name")
            task.set_name(name)
        return Definition(task)

    raise InputError(f"{kind} entry must be a mapping or a name, got {type(data).__name__}")

"""Task document loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

Supported document shapes:

    # Grouped by kind; entries are mappings (definitions) or names (references)
    tasks:
      ResourceGroup:
        - name: rg-core
          location: westeurope
      VirtualNetwork:
        vnet-hub:                  # name taken from the key
          resourceGroup: rg-core
          addressSpace: [10.0.0.0/16]
      ManagedIdentity:
        - id-ops                   # bare reference, defined elsewhere

    # Flat list with an explicit kind per item
    tasks:
      - kind: ResourceGroup
        name: rg-core
      - ResourceGroup/rg-shared    # bare reference

A Kubernetes-style wrapper (apiVersion/kind/metadata/spec) is accepted; the
tasks are then read from spec.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_TASKS_FILE_SIZE_BYTES, MAX_TASKS_PER_RUN
from .model import InputError, Reference, TaskEntry, TaskId, parse_task
from .taskset import TaskSet

logger = logging.getLogger(__name__)

TASK_FILE_SUFFIXES = (".yaml", ".yml")


class TaskLoadError(InputError):
    """Raised when a task document cannot be loaded or fails validation."""

    pass


def load_tasks(path: Path) -> TaskSet:
    """Load and resolve every task document under path.

    Args:
        path: A task document, or a directory of them (loaded in sorted order).

    Returns:
        Resolved task set.

    Raises:
        TaskLoadError: If a document cannot be read or parsed.
        InputError: If the entries do not resolve into a valid task set.
    """
    entries = load_entries(path)
    try:
        return TaskSet.resolve(entries)
    except TaskLoadError:
        raise
    except InputError as e:
        raise TaskLoadError(f"Invalid task set in {path}: {e}") from e


def load_entries(path: Path) -> list[TaskEntry]:
    """Read task entries from a document or a directory of documents."""
    if not path.exists():
        raise TaskLoadError(f"Task path not found: {path}")

    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.suffix in TASK_FILE_SUFFIXES and p.is_file())
        if not files:
            raise TaskLoadError(f"No task documents ({', '.join(TASK_FILE_SUFFIXES)}) in {path}")
    else:
        files = [path]

    entries: list[TaskEntry] = []
    for file_path in files:
        entries.extend(parse_document(read_document(file_path), source=str(file_path)))

    if len(entries) > MAX_TASKS_PER_RUN:
        raise TaskLoadError(f"Task set has {len(entries)} entries, exceeding {MAX_TASKS_PER_RUN}")

    logger.info(
        "Loaded task entries",
        extra={"path": str(path), "files": len(files), "entries": len(entries)},
    )
    return entries


def read_document(file_path: Path) -> Any:
    """Read and YAML-parse one document, enforcing the size limit."""
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = file_path.stat().st_size
    except OSError as e:
        raise TaskLoadError(f"Failed to stat task file {file_path}: {e}") from e

    if file_size > MAX_TASKS_FILE_SIZE_BYTES:
        raise TaskLoadError(
            f"Task file exceeds maximum size of {MAX_TASKS_FILE_SIZE_BYTES} bytes: {file_path}"
        )

    try:
        content = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise TaskLoadError(f"Failed to read task file {file_path}: {e}") from e
    except UnicodeDecodeError as e:
        raise TaskLoadError(f"Task file is not valid UTF-8: {file_path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise TaskLoadError(f"Invalid YAML in {file_path}: {e}") from e


def parse_document(raw_data: Any, source: str = "<document>") -> list[TaskEntry]:
    """Turn a parsed document into task entries.

    Raises:
        TaskLoadError: If the document shape is not supported.
    """
    if raw_data is None:
        return []

    if not isinstance(raw_data, dict):
        raise TaskLoadError(f"Task document must contain a YAML mapping: {source}")

    # Kubernetes-style format: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        raw_data = raw_data.get("spec") or {}
        if not isinstance(raw_data, dict):
            raise TaskLoadError(f"Spec section must be a mapping: {source}")

    if "tasks" not in raw_data:
        raise TaskLoadError(f"Task document has no 'tasks' section: {source}")

    tasks = raw_data["tasks"]
    try:
        if isinstance(tasks, dict):
            return list(_parse_grouped(tasks))
        if isinstance(tasks, list):
            return list(_parse_flat(tasks))
    except TaskLoadError:
        raise
    except InputError as e:
        raise TaskLoadError(f"{source}: {e}") from e

    raise TaskLoadError(f"'tasks' must be a mapping of kinds or a list: {source}")


def _parse_grouped(groups: dict[str, Any]) -> Iterable[TaskEntry]:
    for kind, items in groups.items():
        if items is None:
            continue
        if isinstance(items, list):
            for item in items:
                yield parse_task(kind, item)
        elif isinstance(items, dict):
            for name, body in items.items():
                yield parse_task(kind, body, name=str(name))
        else:
            raise TaskLoadError(f"Entries for {kind} must be a list or a mapping of names")


def _parse_flat(items: list[Any]) -> Iterable[TaskEntry]:
    for item in items:
        if isinstance(item, str):
            yield Reference(TaskId.parse(item))
        elif isinstance(item, dict):
            kind = item.get("kind")
            if not kind:
                raise TaskLoadError(f"Task entry has no kind: {item}")
            body = {k: v for k, v in item.items() if k != "kind"}
            yield parse_task(kind, body)
        else:
            raise TaskLoadError(f"Unsupported task entry: {item!r}")

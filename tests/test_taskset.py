"""Tests for resolving document entries into a task set."""

from __future__ import annotations

import pytest

from cloud_mock import StubTask, sid
from provisioner.azure_tasks import ResourceGroup, VirtualNetwork
from provisioner.model import (
    Definition,
    DuplicateTaskError,
    Reference,
    TaskId,
    UnresolvedReferenceError,
)
from provisioner.taskset import TaskSet


class TestResolve:
    """Tests for TaskSet.resolve."""

    def test_definitions_kept_in_input_order(self) -> None:
        """Test iteration follows input order."""
        task_set = TaskSet.resolve([StubTask(name="b"), StubTask(name="a"), StubTask(name="c")])
        assert task_set.ids() == [sid("b"), sid("a"), sid("c")]

    def test_reference_resolves_against_definition(self) -> None:
        """Test a reference entry matched by a later definition."""
        task_set = TaskSet.resolve(
            [
                Reference(TaskId("ResourceGroup", "rg-core")),
                Definition(ResourceGroup(name="rg-core", location="westeurope")),
            ]
        )
        assert len(task_set) == 1
        assert task_set[TaskId("ResourceGroup", "rg-core")].location == "westeurope"

    def test_unresolved_reference(self) -> None:
        """Test a reference with no definition anywhere is rejected."""
        with pytest.raises(UnresolvedReferenceError, match="rg-missing"):
            TaskSet.resolve([Reference(TaskId("ResourceGroup", "rg-missing"))])

    def test_duplicate_definitions(self) -> None:
        """Test two definitions of one identity are rejected."""
        with pytest.raises(DuplicateTaskError, match="Duplicate definition of Stub 'a'"):
            TaskSet.resolve([StubTask(name="a", value="1"), StubTask(name="a", value="2")])

    def test_inline_definition_lifted(self) -> None:
        """Test inline definitions become tasks of the set."""
        vnet = VirtualNetwork(
            name="vnet-hub",
            resourceGroup={"name": "rg-core", "location": "westeurope"},
        )
        task_set = TaskSet.resolve([vnet])

        assert task_set.ids() == [
            TaskId("VirtualNetwork", "vnet-hub"),
            TaskId("ResourceGroup", "rg-core"),
        ]

    def test_inline_definition_matching_top_level(self) -> None:
        """Test an identical inline copy of a top-level definition is accepted."""
        vnet = VirtualNetwork(
            name="vnet-hub",
            resourceGroup={"name": "rg-core", "location": "westeurope"},
        )
        task_set = TaskSet.resolve([ResourceGroup(name="rg-core", location="westeurope"), vnet])
        assert len(task_set) == 2

    def test_inline_definition_conflicting_with_top_level(self) -> None:
        """Test a different inline copy is a duplicate definition."""
        vnet = VirtualNetwork(
            name="vnet-hub",
            resourceGroup={"name": "rg-core", "location": "northeurope"},
        )
        with pytest.raises(DuplicateTaskError):
            TaskSet.resolve([ResourceGroup(name="rg-core", location="westeurope"), vnet])

    def test_same_instance_twice(self) -> None:
        """Test passing the very same task twice is not a duplicate."""
        task = StubTask(name="a")
        assert len(TaskSet.resolve([task, task])) == 1


class TestLookup:
    """Tests for TaskSet accessors."""

    def test_lookup_by_ref_and_id(self) -> None:
        """Test lookup accepts references and identities."""
        a = StubTask(name="a")
        b = StubTask(name="b", requires=["a"])
        task_set = TaskSet.resolve([a, b])

        assert task_set.lookup(b.requires[0]) is a
        assert task_set.lookup(sid("a")) is a

    def test_lookup_missing(self) -> None:
        """Test lookup of an unknown identity."""
        with pytest.raises(UnresolvedReferenceError):
            TaskSet().lookup(sid("ghost"))

    def test_get_and_contains(self) -> None:
        """Test get() and membership."""
        task_set = TaskSet.resolve([StubTask(name="a")])
        assert sid("a") in task_set
        assert task_set.get(sid("b")) is None

    def test_kinds(self) -> None:
        """Test kinds are sorted and unique."""
        task_set = TaskSet.resolve(
            [ResourceGroup(name="rg"), StubTask(name="a"), StubTask(name="b")]
        )
        assert task_set.kinds() == ["ResourceGroup", "Stub"]

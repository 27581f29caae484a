"""Tests for delta computation."""

from __future__ import annotations

import pytest

from cloud_mock import StubTask
from provisioner.changes import Action, Delta, FieldChange, build_changes, values_equal
from provisioner.model import TaskRef


class TestValuesEqual:
    """Tests for semantic value comparison."""

    @pytest.mark.parametrize(
        "actual,expected",
        [
            (None, []),
            ({}, None),
            ("", None),
            ("true", True),
            ("False", False),
            ("100", 100),
            ("100.0", 100),
            ("1e3", 1000),
            ("nan", "nan"),
            (float("nan"), "nan"),
            ("inf", float("inf")),
            ("9007199254740993", 9007199254740993),
            (2.0, 2),
            (["10.0.0.0/16"], ("10.0.0.0/16",)),
            ({"owner": "platform", "cost": None}, {"owner": "platform"}),
        ],
    )
    def test_equivalent(self, actual: object, expected: object) -> None:
        """Test values the cloud echoes back differently compare equal."""
        assert values_equal(actual, expected)

    @pytest.mark.parametrize(
        "actual,expected",
        [
            ("westeurope", "northeurope"),
            (["a"], ["a", "b"]),
            ({"owner": "platform"}, {"owner": "network"}),
            ("100", 101),
            ("9007199254740993", "9007199254740992"),
            ("9007199254740993", 9007199254740992),
            ("nan", "inf"),
            ("nan", 0),
            ("1_000", 1000),
            ("x", {"x": 1}),
        ],
    )
    def test_different(self, actual: object, expected: object) -> None:
        """Test real differences are detected."""
        assert not values_equal(actual, expected)

    def test_references_compare_by_identity(self) -> None:
        """Test inline definitions do not affect reference equality."""
        plain = TaskRef(kind="Stub", name="a")
        inline = TaskRef(kind="Stub", name="a", target=StubTask(name="a", value="1"))
        assert values_equal(plain, inline)
        assert not values_equal(plain, TaskRef(kind="Stub", name="b"))


class TestBuildChanges:
    """Tests for build_changes."""

    def test_create_when_missing(self) -> None:
        """Test missing live state computes Create with the set fields."""
        delta = build_changes(None, StubTask(name="a", value="1"))

        assert delta.action == Action.CREATE
        assert delta.changes == (FieldChange("value", None, "1"),)

    def test_noop_when_equal(self) -> None:
        """Test matching state computes NoOp."""
        delta = build_changes(StubTask(name="a", value="1"), StubTask(name="a", value="1"))
        assert delta.action == Action.NOOP
        assert not delta.has_changes

    def test_unset_desired_field_ignored(self) -> None:
        """Test None in desired state means don't care."""
        actual = StubTask(name="a", value="1", size=3)
        delta = build_changes(actual, StubTask(name="a", value="1"))
        assert delta.action == Action.NOOP

    def test_update_lists_changed_fields(self) -> None:
        """Test Update carries only differing fields."""
        actual = StubTask(name="a", value="1", size=3)
        delta = build_changes(actual, StubTask(name="a", value="2", size=3))

        assert delta.action == Action.UPDATE
        assert delta.changed_fields == ["value"]
        assert delta.describe() == "Update (value: '1' -> '2')"

    def test_delete_when_marked_deleted(self) -> None:
        """Test deleted tasks compute Delete when the resource exists."""
        delta = build_changes(StubTask(name="a"), StubTask(name="a", deleted=True))
        assert delta == Delta(Action.DELETE)

    def test_deleted_and_missing_is_noop(self) -> None:
        """Test deleting something already gone is a no-op."""
        assert build_changes(None, StubTask(name="a", deleted=True)).action == Action.NOOP

    def test_reference_fields_not_compared(self) -> None:
        """Test references never produce field changes."""
        actual = StubTask(name="b", value="1")
        delta = build_changes(actual, StubTask(name="b", value="1", requires=["a"]))
        assert delta.action == Action.NOOP

"""Tests for the provisioner command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from cloud_mock import InMemoryCloud
from provisioner import cli as cli_module
from provisioner.cli import cli
from provisioner.security import SecretlessViolationError

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
RG_ID = f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-core"

TASKS = """
tasks:
  ResourceGroup:
    - name: rg-core
      location: westeurope
  VirtualNetwork:
    vnet-hub:
      resourceGroup: rg-core
      addressSpace: [10.0.0.0/16]
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def tasks_path(tmp_path: Path) -> Path:
    path = tmp_path / "tasks.yaml"
    path.write_text(TASKS)
    return path


@pytest.fixture
def cloud(monkeypatch: pytest.MonkeyPatch) -> InMemoryCloud:
    """In-memory cloud handed to every AzureCloud the CLI builds."""
    cloud = InMemoryCloud()
    monkeypatch.setattr(cli_module, "AzureCloud", lambda *args, **kwargs: cloud)
    return cloud


class TestValidate:
    """Tests for the validate command."""

    def test_valid(self, runner: CliRunner, tasks_path: Path) -> None:
        """Test a valid document summary."""
        result = runner.invoke(cli, ["validate", str(tasks_path)])

        assert result.exit_code == 0
        assert "OK: 2 task(s) across 2 kind(s) (ResourceGroup, VirtualNetwork)" in result.output

    def test_cycle(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test a cyclic document exits 2 with the cycle path."""
        path = tmp_path / "cycle.yaml"
        path.write_text(
            "tasks:\n"
            "  ResourceGroup:\n"
            "    - name: a\n"
            "      dependsOn: [ResourceGroup/b]\n"
            "    - name: b\n"
            "      dependsOn: [ResourceGroup/a]\n"
        )

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 2
        assert "Circular dependency detected" in result.output

    def test_invalid_encoding(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test an undecodable document exits 2 instead of crashing."""
        path = tmp_path / "binary.yaml"
        path.write_bytes(b"\xff\xfetasks: {}\n")

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 2
        assert "not valid UTF-8" in result.output

    def test_missing_path(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test click rejects a path that does not exist."""
        result = runner.invoke(cli, ["validate", str(tmp_path / "missing.yaml")])
        assert result.exit_code != 0


class TestGraph:
    """Tests for the graph command."""

    def test_text(self, runner: CliRunner, tasks_path: Path) -> None:
        """Test the numbered execution order."""
        result = runner.invoke(cli, ["graph", str(tasks_path)])

        assert result.exit_code == 0
        assert "  1. ResourceGroup/rg-core" in result.output
        assert "  2. VirtualNetwork/vnet-hub  <- ResourceGroup/rg-core" in result.output

    def test_json(self, runner: CliRunner, tasks_path: Path) -> None:
        """Test machine-readable order and dependencies."""
        result = runner.invoke(cli, ["--log-level", "CRITICAL", "graph", str(tasks_path), "-o", "json"])

        data = json.loads(result.stdout)
        assert data["order"] == ["ResourceGroup/rg-core", "VirtualNetwork/vnet-hub"]
        assert data["dependencies"]["VirtualNetwork/vnet-hub"] == ["ResourceGroup/rg-core"]


class TestPlanAndApply:
    """Tests for plan and apply."""

    def test_plan(self, runner: CliRunner, tasks_path: Path, cloud: InMemoryCloud) -> None:
        """Test plan reports changes and writes nothing."""
        result = runner.invoke(cli, ["plan", str(tasks_path), "-s", SUBSCRIPTION_ID])

        assert result.exit_code == 0
        assert "Plan: 2 to create" in result.output
        assert "+ ResourceGroup/rg-core" in result.output
        assert cloud.mutating_calls == []

    def test_apply(self, runner: CliRunner, tasks_path: Path, cloud: InMemoryCloud) -> None:
        """Test apply converges the cloud."""
        result = runner.invoke(cli, ["apply", str(tasks_path), "-s", SUBSCRIPTION_ID, "-w", "2"])

        assert result.exit_code == 0
        assert "Applied: 2 to create" in result.output
        assert RG_ID in cloud.resources

    def test_apply_json(self, runner: CliRunner, tasks_path: Path, cloud: InMemoryCloud) -> None:
        """Test the JSON report."""
        result = runner.invoke(
            cli,
            ["--log-level", "CRITICAL", "apply", str(tasks_path), "-s", SUBSCRIPTION_ID, "-o", "json"],
        )

        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["summary"]["create"] == 2

    def test_task_failure_exits_1(
        self, runner: CliRunner, tasks_path: Path, cloud: InMemoryCloud
    ) -> None:
        """Test a failed task fails the command."""
        cloud.fail("create", RG_ID, RuntimeError("quota exceeded"))

        result = runner.invoke(cli, ["apply", str(tasks_path), "-s", SUBSCRIPTION_ID])

        assert result.exit_code == 1
        assert "! ResourceGroup/rg-core: failed" in result.output
        assert "? VirtualNetwork/vnet-hub: skipped" in result.output

    def test_cloud_unavailable_exits_3(
        self, runner: CliRunner, tasks_path: Path, cloud: InMemoryCloud
    ) -> None:
        """Test an unreachable cloud exits 3."""
        cloud.connectivity_error = ConnectionError("unreachable")

        result = runner.invoke(cli, ["apply", str(tasks_path), "-s", SUBSCRIPTION_ID])

        assert result.exit_code == 3
        assert "unreachable" in result.output

    def test_secret_exits_4(
        self, runner: CliRunner, tasks_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a secretless violation exits 4."""

        def refuse(*args: object, **kwargs: object) -> None:
            raise SecretlessViolationError("Refusing to provision: AZURE_CLIENT_SECRET is set.")

        monkeypatch.setattr(cli_module, "AzureCloud", refuse)

        result = runner.invoke(cli, ["apply", str(tasks_path), "-s", SUBSCRIPTION_ID])

        assert result.exit_code == 4
        assert "AZURE_CLIENT_SECRET" in result.output

    def test_invalid_settings(self, runner: CliRunner, tasks_path: Path, cloud: InMemoryCloud) -> None:
        """Test out-of-range options are usage errors."""
        result = runner.invoke(cli, ["apply", str(tasks_path), "-s", SUBSCRIPTION_ID, "-w", "0"])

        assert result.exit_code == 1
        assert "MAX_WORKERS" in result.output

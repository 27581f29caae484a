"""Provisioner command line.

Usage:
    provisioner validate tasks/            # Parse, resolve and check the graph
    provisioner graph tasks/               # Show the execution order
    provisioner plan tasks/ -s <sub-id>    # Dry run: report what would change
    provisioner apply tasks/ -s <sub-id>   # Converge live state

Exit codes follow provisioner.main: 0 success, 1 task failures, 2 invalid
task documents, 3 cloud unreachable, 4 credential secret in the environment.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from . import azure_tasks  # noqa: F401  registers the Azure task kinds
from .cloud import AzureCloud, CloudUnavailableError
from .config import (
    DEFAULT_MAX_WORKERS,
    DEFAULT_TASK_TIMEOUT_SECONDS,
    ConfigurationError,
    ExecutorConfig,
    RunMode,
    WarnPolicy,
)
from .executor import Executor
from .graph import DependencyGraph, build_graph
from .lifecycle import create_lifecycle_gate_from_env
from .loader import load_tasks
from .main import (
    EXIT_CLOUD_UNAVAILABLE,
    EXIT_INPUT_ERROR,
    EXIT_SECURITY_VIOLATION,
    run_with_signals,
    setup_logging,
)
from .model import InputError
from .report import RunReport
from .security import SecretlessViolationError

OUTPUT_FORMATS = ("text", "json")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _load_graph(path: Path) -> DependencyGraph:
    """Load task documents into a validated graph, exiting 2 on input errors."""
    try:
        return build_graph(load_tasks(path))
    except InputError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_INPUT_ERROR)


def _emit(data: dict[str, Any], text: str, output: str) -> None:
    if output == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(text)


@click.group()
@click.version_option(version="0.1.0", prog_name="provisioner")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    envvar="LOG_LEVEL",
    help="Log level for JSON logs on stderr",
)
def cli(log_level: str) -> None:
    """Declarative Azure provisioning from task documents.

    \b
    Commands:
      validate  Check task documents without touching the cloud
      graph     Print tasks in execution order
      plan      Compute changes against live state (dry run)
      apply     Apply changes
    """
    setup_logging(log_level.upper(), stream=sys.stderr)


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
def validate(path: Path) -> None:
    """Parse and resolve task documents and check for cycles."""
    graph = _load_graph(path)
    kinds = sorted({task_id.kind for task_id in graph})
    click.echo(f"OK: {len(graph)} task(s) across {len(kinds)} kind(s) ({', '.join(kinds)})")


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="text")
def graph(path: Path, output: str) -> None:
    """Print tasks in the order they would run."""
    dependency_graph = _load_graph(path)
    order = dependency_graph.topological_sort()

    lines = []
    for index, task_id in enumerate(order, start=1):
        deps = dependency_graph.dependencies_of(task_id)
        suffix = f"  <- {', '.join(str(d) for d in deps)}" if deps else ""
        lines.append(f"{index:>3}. {task_id}{suffix}")

    data = {
        "order": [str(task_id) for task_id in order],
        "dependencies": {
            str(task_id): [str(d) for d in dependency_graph.dependencies_of(task_id)]
            for task_id in order
        },
    }
    _emit(data, "\n".join(lines), output)


_RUN_OPTIONS = [
    click.argument("path", type=click.Path(exists=True, path_type=Path)),
    click.option(
        "--subscription-id",
        "-s",
        envvar="AZURE_SUBSCRIPTION_ID",
        required=True,
        help="Target Azure subscription ID",
    ),
    click.option(
        "--location",
        "-l",
        envvar="AZURE_LOCATION",
        default="westeurope",
        show_default=True,
        help="Default location for tasks that set none",
    ),
    click.option(
        "--workers",
        "-w",
        type=int,
        default=DEFAULT_MAX_WORKERS,
        show_default=True,
        help="Concurrent task workers",
    ),
    click.option(
        "--task-timeout",
        type=int,
        default=DEFAULT_TASK_TIMEOUT_SECONDS,
        show_default=True,
        help="Seconds allowed per cloud call",
    ),
    click.option("--timeout", type=int, default=None, help="Deadline for the whole run (seconds)"),
    click.option("--stop-on-failure", is_flag=True, help="Cancel the run on the first failure"),
    click.option(
        "--warn-policy",
        type=click.Choice([p.value for p in WarnPolicy]),
        default=WarnPolicy.WARN_AND_CONTINUE.value,
        show_default=True,
        help="Whether warn-only lifecycles also apply drift",
    ),
    click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="text"),
]


def run_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by plan and apply."""
    for decorator in reversed(_RUN_OPTIONS):
        func = decorator(func)
    return func


def _execute(
    mode: RunMode,
    path: Path,
    subscription_id: str,
    location: str,
    workers: int,
    task_timeout: int,
    timeout: int | None,
    stop_on_failure: bool,
    warn_policy: str,
    output: str,
) -> None:
    try:
        config = ExecutorConfig(
            mode=mode,
            max_workers=workers,
            task_timeout_seconds=task_timeout,
            run_timeout_seconds=timeout,
            stop_on_first_failure=stop_on_failure,
            warn_policy=WarnPolicy(warn_policy),
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    dependency_graph = _load_graph(path)

    try:
        cloud = AzureCloud(subscription_id, operation_timeout_seconds=task_timeout)
    except SecretlessViolationError as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_SECURITY_VIOLATION)

    executor = Executor(
        cloud,
        config,
        create_lifecycle_gate_from_env(config.warn_policy),
        subscription_id=subscription_id,
        location=location,
    )

    try:
        report: RunReport = asyncio.run(run_with_signals(executor, dependency_graph))
    except CloudUnavailableError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_CLOUD_UNAVAILABLE)

    _emit(report.to_dict(), report.render_plan(), output)
    sys.exit(report.exit_code)


@cli.command()
@run_options
def plan(**options: Any) -> None:
    """Show what apply would change, without changing anything."""
    _execute(RunMode.DRY_RUN, **options)


@cli.command()
@run_options
def apply(**options: Any) -> None:
    """Converge live state toward the task documents."""
    _execute(RunMode.APPLY, **options)


if __name__ == "__main__":
    cli()

"""Environment-driven entry point for running the provisioner in a container.

Reads everything from the environment (see config.Config.from_env), runs the
task documents at TASKS_PATH once and exits with the run's status:

    0  every task reached Done
    1  a task failed or was skipped, or configuration is invalid
    2  the task documents are invalid (nothing ran)
    3  the cloud API is unreachable (nothing ran)
    4  a credential secret was found in the environment

SIGINT/SIGTERM cancel the run: in-flight tasks finish, nothing new starts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TextIO

from . import azure_tasks  # noqa: F401  registers the Azure task kinds
from .cloud import AzureCloud, CloudUnavailableError
from .config import Config, ConfigurationError
from .executor import Executor
from .graph import DependencyGraph, build_graph
from .lifecycle import create_lifecycle_gate_from_env
from .loader import load_tasks
from .model import InputError
from .report import RunReport
from .security import SecretlessViolationError

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INPUT_ERROR = 2
EXIT_CLOUD_UNAVAILABLE = 3
EXIT_SECURITY_VIOLATION = 4

# LogRecord attributes that are not user-supplied extras
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int | str = logging.INFO, stream: TextIO | None = None) -> None:
    """Configure structured logging with JSON output.

    Args:
        level: Root log level.
        stream: Output stream (default: stdout).
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def run_with_signals(executor: Executor, graph: DependencyGraph) -> RunReport:
    """Run the graph, cancelling gracefully on SIGINT/SIGTERM."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        executor.cancel(f"Received {sig.name}")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    try:
        return await executor.run(graph)
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


async def main() -> int:
    """Run the provisioner once.

    Returns:
        Exit code (see module docstring).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info(
        "Starting provisioner",
        extra={
            "tasks_path": str(config.tasks_path),
            "subscription_id": config.subscription_id,
            "location": config.location,
            "mode": config.executor.mode.value,
        },
    )

    try:
        graph = build_graph(load_tasks(config.tasks_path))
    except InputError as e:
        logger.error("Invalid task documents", extra={"error": str(e)})
        return EXIT_INPUT_ERROR

    try:
        cloud = AzureCloud(
            config.subscription_id,
            operation_timeout_seconds=config.executor.task_timeout_seconds,
        )
    except SecretlessViolationError as e:
        # SECURITY: Credential detected - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    executor = Executor(
        cloud,
        config.executor,
        create_lifecycle_gate_from_env(config.executor.warn_policy),
        subscription_id=config.subscription_id,
        location=config.location,
    )

    try:
        report = await run_with_signals(executor, graph)
    except CloudUnavailableError as e:
        logger.error("Cloud unavailable", extra={"error": str(e)})
        return EXIT_CLOUD_UNAVAILABLE
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info("Run report", extra={"report": report.to_dict()})
    return report.exit_code


def run() -> None:
    """Entry point for the container image."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()

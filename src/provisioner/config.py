"""Configuration management with validation.

Limits are enforced at configuration load time so a bad environment fails
before any task is scheduled.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class RunMode(str, Enum):
    """Execution modes for a provisioning run."""

    DRY_RUN = "dryRun"  # Compute and report deltas, apply nothing
    APPLY = "apply"  # Perform side-effecting calls


class WarnPolicy(str, Enum):
    """What to do when a warn-only lifecycle computes a change."""

    WARN_AND_CONTINUE = "warnAndContinue"  # Report drift, leave it in place
    WARN_AND_APPLY = "warnAndApply"  # Report drift, then correct it


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_WORKERS = 10
MIN_MAX_WORKERS = 1
MAX_MAX_WORKERS = 64

DEFAULT_TASK_TIMEOUT_SECONDS = 600
MAX_TASK_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_TASK_ATTEMPTS = 3
MAX_TASK_ATTEMPTS = 10
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0

# Input limits
MAX_TASKS_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per task document
MAX_TASKS_PER_RUN = 5000

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"


def _get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def _get_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be a number: {value}") from e


def _get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class ExecutorConfig:
    """Scheduling and retry settings for one run.

    All fields are validated at construction time. Invalid values raise
    ConfigurationError immediately rather than failing mid-run.
    """

    mode: RunMode = RunMode.APPLY

    # Worker pool size; also bounds concurrent cloud calls
    max_workers: int = DEFAULT_MAX_WORKERS

    # Timing
    task_timeout_seconds: int = DEFAULT_TASK_TIMEOUT_SECONDS
    run_timeout_seconds: int | None = None  # None = no run deadline

    # Retry of TryAgainLater inside a single task
    max_task_attempts: int = DEFAULT_MAX_TASK_ATTEMPTS
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS

    # Behavior
    stop_on_first_failure: bool = False
    warn_policy: WarnPolicy = WarnPolicy.WARN_AND_CONTINUE

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not (MIN_MAX_WORKERS <= self.max_workers <= MAX_MAX_WORKERS):
            errors.append(
                f"MAX_WORKERS must be between {MIN_MAX_WORKERS} and {MAX_MAX_WORKERS}"
            )

        if not (1 <= self.task_timeout_seconds <= MAX_TASK_TIMEOUT_SECONDS):
            errors.append(
                f"TASK_TIMEOUT must be between 1 and {MAX_TASK_TIMEOUT_SECONDS} seconds"
            )

        if self.run_timeout_seconds is not None and self.run_timeout_seconds < 1:
            errors.append("RUN_TIMEOUT must be at least 1 second when set")

        if not (1 <= self.max_task_attempts <= MAX_TASK_ATTEMPTS):
            errors.append(f"MAX_TASK_ATTEMPTS must be between 1 and {MAX_TASK_ATTEMPTS}")

        if self.retry_backoff_seconds < 0:
            errors.append("RETRY_BACKOFF_SECONDS cannot be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def dry_run(self) -> bool:
        return self.mode == RunMode.DRY_RUN

    @classmethod
    def from_env(cls) -> ExecutorConfig:
        """Load executor configuration from environment variables.

        Environment Variables:
            RUN_MODE: One of dryRun, apply (default: apply)
            DRY_RUN: Legacy switch, "true" selects dryRun when RUN_MODE is unset
            MAX_WORKERS: Concurrent task workers (default: 10)
            TASK_TIMEOUT: Seconds allowed per cloud call (default: 600)
            RUN_TIMEOUT: Deadline for the whole run in seconds (default: none)
            MAX_TASK_ATTEMPTS: Attempts for retryable task errors (default: 3)
            RETRY_BACKOFF_SECONDS: Base backoff between attempts (default: 2)
            STOP_ON_FIRST_FAILURE: Cancel the run on the first failed task
            WARN_POLICY: warnAndContinue or warnAndApply
        """
        mode_value = os.environ.get("RUN_MODE", "")
        if mode_value:
            try:
                mode = RunMode(mode_value)
            except ValueError as e:
                valid = [m.value for m in RunMode]
                raise ConfigurationError(f"RUN_MODE must be one of {valid}: {mode_value}") from e
        else:
            mode = RunMode.DRY_RUN if _get_bool("DRY_RUN", False) else RunMode.APPLY

        policy_value = os.environ.get("WARN_POLICY", "")
        try:
            warn_policy = WarnPolicy(policy_value) if policy_value else WarnPolicy.WARN_AND_CONTINUE
        except ValueError as e:
            valid = [p.value for p in WarnPolicy]
            raise ConfigurationError(f"WARN_POLICY must be one of {valid}: {policy_value}") from e

        run_timeout = _get_int("RUN_TIMEOUT", 0)

        return cls(
            mode=mode,
            max_workers=_get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            task_timeout_seconds=_get_int("TASK_TIMEOUT", DEFAULT_TASK_TIMEOUT_SECONDS),
            run_timeout_seconds=run_timeout or None,
            max_task_attempts=_get_int("MAX_TASK_ATTEMPTS", DEFAULT_MAX_TASK_ATTEMPTS),
            retry_backoff_seconds=_get_float(
                "RETRY_BACKOFF_SECONDS", DEFAULT_RETRY_BACKOFF_SECONDS
            ),
            stop_on_first_failure=_get_bool("STOP_ON_FIRST_FAILURE", False),
            warn_policy=warn_policy,
        )


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables."""

    # Required fields
    tasks_path: Path
    subscription_id: str
    location: str

    executor: ExecutorConfig = field(default_factory=ExecutorConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All inputs are validated at the boundary (fail-fast).
        """
        import re

        errors: list[str] = []

        if not self.tasks_path or not self.tasks_path.exists():
            errors.append(f"TASKS_PATH does not exist: {self.tasks_path}")

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def dry_run(self) -> bool:
        return self.executor.dry_run

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TASKS_PATH: Task document file or directory (default: /tasks)
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_LOCATION: Default location for tasks that set none

        Executor variables are documented on ExecutorConfig.from_env.
        """
        return cls(
            tasks_path=Path(os.environ.get("TASKS_PATH", "/tasks")),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            executor=ExecutorConfig.from_env(),
        )

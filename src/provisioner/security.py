"""Secretless credential acquisition.

The provisioner authenticates to Azure only through managed identity:
- No service principal secrets, certificates or passwords in the environment
- ManagedIdentityCredential is the only credential type handed out
- Every side-effecting call is written to the audit log

SECURITY INVARIANTS:
1. Credential environment variables block credential acquisition
2. Secretless enforcement runs before any credential is constructed
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Refusing to provision: {env_var} is set.\n"
    "The provisioner authenticates with managed identity only. Remove the credential\n"
    "variables from the environment and grant the workload's managed identity the\n"
    "RBAC roles its tasks need."
)


class SecretlessViolationError(Exception):
    """Raised when a secret credential is present in the environment."""

    pass


def enforce_secretless_architecture() -> None:
    """Fail if any credential secret is present in the environment.

    Raises:
        SecretlessViolationError: If a forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "run_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.debug("Secretless environment verified", extra={"security_event": "secretless_verified"})


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Return a ManagedIdentityCredential after enforcing secretless mode.

    Args:
        client_id: Client ID of a user-assigned identity. Falls back to
            AZURE_CLIENT_ID, then to the system-assigned identity.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    enforce_secretless_architecture()

    client_id = client_id or os.environ.get("AZURE_CLIENT_ID") or None
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def log_security_audit_event(
    event_type: str,
    target_resource: str,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Write a structured audit record for a side-effecting cloud call.

    Args:
        event_type: Kind of event (provision, access_denied, ...).
        target_resource: Task identity the call was made for.
        action: Action performed (Create, Update, Delete).
        result: success, failure or denied.
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )

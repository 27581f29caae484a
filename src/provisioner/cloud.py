"""Cloud-state accessor protocol and its Azure Resource Manager implementation.

The executor receives an accessor at construction time and hands it to every
task through the run context; nothing in the core builds one itself.

AzureCloud maps task kinds to ARM resource types and drives the generic
resource operations of ResourceManagementClient. All methods are blocking and
are called from worker threads, never from the event loop.

Error translation:
- ResourceNotFoundError on get -> None ("not found")
- HTTP 429/502/503/504 -> TryAgainLater (retried inside the task)
- Any failure of check_connectivity -> CloudUnavailableError (whole run)
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol, runtime_checkable

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup

from .config import DEFAULT_TASK_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# Kind -> (ARM resource type, api-version)
RESOURCE_KINDS: dict[str, tuple[str, str]] = {
    "ResourceGroup": ("Microsoft.Resources/resourceGroups", "2022-09-01"),
    "VirtualNetwork": ("Microsoft.Network/virtualNetworks", "2023-09-01"),
    "Subnet": ("Microsoft.Network/virtualNetworks/subnets", "2023-09-01"),
    "ManagedIdentity": ("Microsoft.ManagedIdentity/userAssignedIdentities", "2023-01-31"),
}

# Throttling and transient gateway failures
RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


class TryAgainLater(Exception):
    """Raised when an operation should be retried after a backoff.

    Attributes:
        retry_after: Seconds suggested by the server, if any.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class CloudUnavailableError(Exception):
    """Raised when the cloud API cannot be reached at all."""

    pass


@runtime_checkable
class CloudAccessor(Protocol):
    """Per-kind list/get/create/update/delete against a remote API."""

    def get(self, kind: str, resource_id: str) -> dict[str, Any] | None: ...

    def list(self, kind: str, scope: str | None = None) -> list[dict[str, Any]]: ...

    def create(self, kind: str, resource_id: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, kind: str, resource_id: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, kind: str, resource_id: str) -> None: ...

    def check_connectivity(self) -> None: ...


def is_access_denied(error: BaseException) -> bool:
    """Check whether an error means the identity lacks permission."""
    if isinstance(error, ClientAuthenticationError | PermissionError):
        return True
    if isinstance(error, HttpResponseError):
        return error.status_code == 403
    return False


def _retry_after(error: HttpResponseError) -> float | None:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class AzureCloud:
    """CloudAccessor backed by Azure Resource Manager.

    SECURITY: When no client is injected, credentials come exclusively from
    managed identity (see security.get_managed_identity_credential).
    """

    def __init__(
        self,
        subscription_id: str,
        credential: Any = None,
        client: ResourceManagementClient | None = None,
        operation_timeout_seconds: int = DEFAULT_TASK_TIMEOUT_SECONDS,
    ) -> None:
        self._subscription_id = subscription_id
        self._operation_timeout = operation_timeout_seconds

        if client is None:
            if credential is None:
                from .security import get_managed_identity_credential

                credential = get_managed_identity_credential()
            client = ResourceManagementClient(
                credential=credential,
                subscription_id=subscription_id,
            )
        self._client = client

    @property
    def subscription_id(self) -> str:
        return self._subscription_id

    def _resource_type(self, kind: str) -> tuple[str, str]:
        try:
            return RESOURCE_KINDS[kind]
        except KeyError:
            raise ValueError(f"No Azure resource type registered for kind '{kind}'") from None

    @contextmanager
    def _translate_errors(self, operation: str, resource_id: str) -> Iterator[None]:
        try:
            yield
        except HttpResponseError as e:
            if e.status_code in RETRYABLE_STATUS_CODES:
                logger.warning(
                    "Azure API asked to retry",
                    extra={
                        "operation": operation,
                        "resource_id": resource_id,
                        "status_code": e.status_code,
                    },
                )
                raise TryAgainLater(
                    f"{operation} {resource_id} returned {e.status_code}", _retry_after(e)
                ) from e
            raise

    def get(self, kind: str, resource_id: str) -> dict[str, Any] | None:
        """Fetch a resource, or None if it does not exist."""
        _, api_version = self._resource_type(kind)
        with self._translate_errors("get", resource_id):
            try:
                if kind == "ResourceGroup":
                    result = self._client.resource_groups.get(_last_segment(resource_id))
                else:
                    result = self._client.resources.get_by_id(resource_id, api_version)
            except ResourceNotFoundError:
                return None
        return result.as_dict()

    def list(self, kind: str, scope: str | None = None) -> list[dict[str, Any]]:
        """List resources of a kind, optionally within one resource group."""
        resource_type, _ = self._resource_type(kind)
        with self._translate_errors("list", scope or self._subscription_id):
            if kind == "ResourceGroup":
                items = self._client.resource_groups.list()
            elif scope:
                items = self._client.resources.list_by_resource_group(
                    scope, filter=f"resourceType eq '{resource_type}'"
                )
            else:
                items = self._client.resources.list(filter=f"resourceType eq '{resource_type}'")
            return [item.as_dict() for item in items]

    def create(self, kind: str, resource_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return self._put(kind, resource_id, body, "create")

    def update(self, kind: str, resource_id: str, body: dict[str, Any]) -> dict[str, Any]:
        # ARM PUT replaces the resource; callers send the merged desired state
        return self._put(kind, resource_id, body, "update")

    def _put(
        self, kind: str, resource_id: str, body: dict[str, Any], operation: str
    ) -> dict[str, Any]:
        _, api_version = self._resource_type(kind)
        logger.info(
            f"Azure {operation}",
            extra={"kind": kind, "resource_id": resource_id},
        )
        with self._translate_errors(operation, resource_id):
            if kind == "ResourceGroup":
                result = self._client.resource_groups.create_or_update(
                    _last_segment(resource_id),
                    ResourceGroup(location=body.get("location"), tags=body.get("tags")),
                )
            else:
                poller = self._client.resources.begin_create_or_update_by_id(
                    resource_id,
                    api_version,
                    GenericResource(
                        location=body.get("location"),
                        tags=body.get("tags"),
                        properties=body.get("properties"),
                    ),
                )
                result = poller.result(timeout=self._operation_timeout)
        return result.as_dict() if result is not None else {}

    def delete(self, kind: str, resource_id: str) -> None:
        _, api_version = self._resource_type(kind)
        logger.info("Azure delete", extra={"kind": kind, "resource_id": resource_id})
        with self._translate_errors("delete", resource_id):
            try:
                if kind == "ResourceGroup":
                    poller = self._client.resource_groups.begin_delete(_last_segment(resource_id))
                else:
                    poller = self._client.resources.begin_delete_by_id(resource_id, api_version)
                poller.result(timeout=self._operation_timeout)
            except ResourceNotFoundError:
                logger.info("Resource already deleted", extra={"resource_id": resource_id})

    def check_connectivity(self) -> None:
        """Make one cheap read to prove the API and credentials work.

        Raises:
            CloudUnavailableError: If the API cannot be reached or rejects us.
        """
        try:
            next(iter(self._client.resource_groups.list(top=1)), None)
        except AzureError as e:
            logger.error(
                "Azure API unreachable",
                extra={"subscription_id": self._subscription_id, "error": str(e)},
            )
            raise CloudUnavailableError(
                f"Cannot reach Azure Resource Manager for subscription {self._subscription_id}: {e}"
            ) from e


def _last_segment(resource_id: str) -> str:
    return resource_id.rstrip("/").rsplit("/", 1)[-1]

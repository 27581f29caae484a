"""Tests for the Azure cloud accessor."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from cloud_mock import InMemoryCloud
from provisioner.cloud import (
    AzureCloud,
    CloudAccessor,
    CloudUnavailableError,
    TryAgainLater,
    is_access_denied,
)

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
RG_ID = f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-core"
VNET_ID = f"{RG_ID}/providers/Microsoft.Network/virtualNetworks/vnet-hub"


def http_error(status_code: int, retry_after: str | None = None) -> HttpResponseError:
    error = HttpResponseError(message=f"status {status_code}")
    error.status_code = status_code
    if retry_after is not None:
        error.response = MagicMock(headers={"Retry-After": retry_after})
    return error


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def azure(client: MagicMock) -> AzureCloud:
    return AzureCloud(SUBSCRIPTION_ID, client=client)


class TestProtocol:
    """Tests for the accessor protocol."""

    def test_implementations_satisfy_protocol(self, azure: AzureCloud) -> None:
        """Test both accessors are CloudAccessors."""
        assert isinstance(azure, CloudAccessor)
        assert isinstance(InMemoryCloud(), CloudAccessor)


class TestGet:
    """Tests for AzureCloud.get."""

    def test_resource_group(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test resource groups are read by name."""
        client.resource_groups.get.return_value.as_dict.return_value = {"location": "westeurope"}

        assert azure.get("ResourceGroup", RG_ID) == {"location": "westeurope"}
        client.resource_groups.get.assert_called_once_with("rg-core")

    def test_generic_resource(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test other kinds are read by ID with their api-version."""
        client.resources.get_by_id.return_value.as_dict.return_value = {"name": "vnet-hub"}

        assert azure.get("VirtualNetwork", VNET_ID) == {"name": "vnet-hub"}
        client.resources.get_by_id.assert_called_once_with(VNET_ID, "2023-09-01")

    def test_not_found_is_none(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test a missing resource reads as None."""
        client.resources.get_by_id.side_effect = ResourceNotFoundError("not found")
        assert azure.get("VirtualNetwork", VNET_ID) is None

    def test_throttling_is_try_again_later(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test 429 becomes TryAgainLater carrying Retry-After."""
        client.resources.get_by_id.side_effect = http_error(429, retry_after="7")

        with pytest.raises(TryAgainLater) as exc_info:
            azure.get("VirtualNetwork", VNET_ID)
        assert exc_info.value.retry_after == 7.0

    def test_other_errors_propagate(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test non-retryable HTTP errors are not translated."""
        client.resources.get_by_id.side_effect = http_error(400)
        with pytest.raises(HttpResponseError):
            azure.get("VirtualNetwork", VNET_ID)

    def test_unknown_kind(self, azure: AzureCloud) -> None:
        """Test kinds without an ARM mapping are rejected."""
        with pytest.raises(ValueError, match="No Azure resource type"):
            azure.get("Stub", "stub/a")


class TestWrite:
    """Tests for create, update and delete."""

    def test_create_resource_group(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test resource groups use create_or_update."""
        client.resource_groups.create_or_update.return_value.as_dict.return_value = {"id": RG_ID}

        result = azure.create("ResourceGroup", RG_ID, {"location": "westeurope", "tags": {}})

        assert result == {"id": RG_ID}
        name, model = client.resource_groups.create_or_update.call_args.args
        assert name == "rg-core"
        assert model.location == "westeurope"

    def test_update_generic_resource_waits_for_poller(
        self, azure: AzureCloud, client: MagicMock
    ) -> None:
        """Test long-running PUTs are awaited with the operation timeout."""
        poller = client.resources.begin_create_or_update_by_id.return_value
        poller.result.return_value.as_dict.return_value = {"id": VNET_ID}

        body = {"location": "westeurope", "properties": {"addressSpace": {}}}
        assert azure.update("VirtualNetwork", VNET_ID, body) == {"id": VNET_ID}

        resource_id, api_version, resource = client.resources.begin_create_or_update_by_id.call_args.args
        assert (resource_id, api_version) == (VNET_ID, "2023-09-01")
        assert resource.properties == {"addressSpace": {}}
        poller.result.assert_called_once_with(timeout=600)

    def test_delete_tolerates_missing(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test deleting an already-deleted resource succeeds."""
        client.resources.begin_delete_by_id.side_effect = ResourceNotFoundError("gone")
        azure.delete("VirtualNetwork", VNET_ID)

    def test_delete_unavailable_is_retryable(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test 503 on delete becomes TryAgainLater."""
        client.resource_groups.begin_delete.side_effect = http_error(503)
        with pytest.raises(TryAgainLater):
            azure.delete("ResourceGroup", RG_ID)


class TestConnectivity:
    """Tests for check_connectivity."""

    def test_reachable(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test a successful list passes."""
        client.resource_groups.list.return_value = iter([])
        azure.check_connectivity()
        client.resource_groups.list.assert_called_once_with(top=1)

    def test_unreachable(self, azure: AzureCloud, client: MagicMock) -> None:
        """Test any Azure error becomes CloudUnavailableError."""
        client.resource_groups.list.side_effect = ServiceRequestError("connection refused")
        with pytest.raises(CloudUnavailableError, match=SUBSCRIPTION_ID):
            azure.check_connectivity()


class TestCredentials:
    """Tests for credential acquisition."""

    def test_managed_identity_used_without_client(self) -> None:
        """Test the default client is built from a managed identity credential."""
        with (
            patch("provisioner.security.get_managed_identity_credential") as get_credential,
            patch("provisioner.cloud.ResourceManagementClient") as client_class,
        ):
            AzureCloud(SUBSCRIPTION_ID)

        get_credential.assert_called_once_with()
        client_class.assert_called_once_with(
            credential=get_credential.return_value, subscription_id=SUBSCRIPTION_ID
        )


class TestAccessDenied:
    """Tests for is_access_denied."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (PermissionError("denied"), True),
            (ClientAuthenticationError("bad token"), True),
            (http_error(403), True),
            (http_error(404), False),
            (RuntimeError("boom"), False),
        ],
    )
    def test_classification(self, error: BaseException, expected: bool) -> None:
        """Test which errors count as insufficient access."""
        assert is_access_denied(error) is expected

"""Concrete Azure task kinds.

Each kind is a pydantic model describing the desired resource plus three
small hooks used by the shared find()/render() implementation:
- resource_id(context): ARM ID derived from the task and its references
- build_body(context, state): request body for create and update
- observe(body): live resource body -> task fields

Importing this module registers the kinds with the task registry.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from pydantic import Field, field_validator

from .changes import Action, Delta
from .model import InputError, Task, reference_to
from .reconcile import RunContext

logger = logging.getLogger(__name__)

ResourceGroupRef = reference_to("ResourceGroup")
VirtualNetworkRef = reference_to("VirtualNetwork")


def _normalize_location(value: str | None) -> str | None:
    """'West Europe' and 'westeurope' name the same region."""
    if value is None:
        return None
    return value.replace(" ", "").lower()


class AzureResourceTask(Task):
    """Base for tasks backed by one ARM resource."""

    def resource_id(self, context: RunContext) -> str:
        raise NotImplementedError

    def build_body(self, context: RunContext, state: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @classmethod
    def observe(cls, body: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def desired_state(self, actual: Task | None) -> dict[str, Any]:
        """Desired fields, with unset ones taken from live state."""
        state = self.compare_fields()
        if actual is not None:
            current = actual.compare_fields()
            for name, value in state.items():
                if value is None:
                    state[name] = current.get(name)
        return state

    def find(self, context: RunContext) -> Task | None:
        body = context.cloud.get(self.kind, self.resource_id(context))
        if body is None:
            return None
        # Start from "nothing known" so fields the API omits read as unset
        cleared = {name: None for name in self.compare_fields()}
        return self.model_copy(update={**cleared, **self.observe(body)})

    def render(self, context: RunContext, actual: Task | None, delta: Delta) -> None:
        resource_id = self.resource_id(context)
        match delta.action:
            case Action.CREATE:
                context.cloud.create(
                    self.kind, resource_id, self.build_body(context, self.desired_state(None))
                )
            case Action.UPDATE:
                context.cloud.update(
                    self.kind, resource_id, self.build_body(context, self.desired_state(actual))
                )
            case Action.DELETE:
                context.cloud.delete(self.kind, resource_id)
            case Action.NOOP:
                return
        logger.debug(
            "Rendered task",
            extra={"task": str(self.id), "action": delta.action.value, "resource_id": resource_id},
        )


class RegionalResourceTask(AzureResourceTask):
    """Base for resources that live in a region and carry tags."""

    immutable_fields: ClassVar[frozenset[str]] = frozenset({"location"})

    location: str | None = None
    tags: dict[str, str] | None = None

    @field_validator("location")
    @classmethod
    def normalize_location(cls, v: str | None) -> str | None:
        return _normalize_location(v)

    def build_body(self, context: RunContext, state: dict[str, Any]) -> dict[str, Any]:
        return {
            "location": state.get("location") or context.location,
            "tags": state.get("tags") or {},
        }

    @classmethod
    def observe(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {
            "location": _normalize_location(body.get("location")),
            "tags": body.get("tags") or {},
        }


def _resource_group_id(context: RunContext, name: str) -> str:
    return f"/subscriptions/{context.subscription_id}/resourceGroups/{name}"


def _properties(body: dict[str, Any]) -> dict[str, Any]:
    return body.get("properties") or {}


class ResourceGroup(RegionalResourceTask):
    """An Azure resource group.

    Example:
        - name: rg-core
          location: westeurope
          tags: {owner: platform}
    """

    kind: ClassVar[str] = "ResourceGroup"

    def resource_id(self, context: RunContext) -> str:
        return _resource_group_id(context, self.id.name)


class VirtualNetwork(RegionalResourceTask):
    """A virtual network inside a resource group."""

    kind: ClassVar[str] = "VirtualNetwork"
    reference_fields: ClassVar[tuple[str, ...]] = ("resource_group",)

    resource_group: ResourceGroupRef = Field(alias="resourceGroup")
    address_space: list[str] | None = Field(None, alias="addressSpace")
    dns_servers: list[str] | None = Field(None, alias="dnsServers")

    def resource_id(self, context: RunContext) -> str:
        return (
            f"{_resource_group_id(context, self.resource_group.name)}"
            f"/providers/Microsoft.Network/virtualNetworks/{self.id.name}"
        )

    def build_body(self, context: RunContext, state: dict[str, Any]) -> dict[str, Any]:
        properties: dict[str, Any] = {
            "addressSpace": {"addressPrefixes": list(state.get("address_space") or [])},
        }
        if state.get("dns_servers") is not None:
            properties["dhcpOptions"] = {"dnsServers": list(state["dns_servers"])}
        return {**super().build_body(context, state), "properties": properties}

    @classmethod
    def observe(cls, body: dict[str, Any]) -> dict[str, Any]:
        properties = _properties(body)
        return {
            **super().observe(body),
            "address_space": (properties.get("addressSpace") or {}).get("addressPrefixes") or [],
            "dns_servers": (properties.get("dhcpOptions") or {}).get("dnsServers") or [],
        }


class Subnet(AzureResourceTask):
    """A subnet of a virtual network.

    The resource group is taken from the referenced virtual network.
    """

    kind: ClassVar[str] = "Subnet"
    reference_fields: ClassVar[tuple[str, ...]] = ("virtual_network",)

    virtual_network: VirtualNetworkRef = Field(alias="virtualNetwork")
    address_prefix: str | None = Field(None, alias="addressPrefix")

    def resource_id(self, context: RunContext) -> str:
        network = context.lookup(self.virtual_network)
        if not isinstance(network, VirtualNetwork):
            raise InputError(
                f"{self.id}: virtualNetwork {self.virtual_network} resolves to {network.kind}"
            )
        return f"{network.resource_id(context)}/subnets/{self.id.name}"

    def build_body(self, context: RunContext, state: dict[str, Any]) -> dict[str, Any]:
        return {"properties": {"addressPrefix": state.get("address_prefix")}}

    @classmethod
    def observe(cls, body: dict[str, Any]) -> dict[str, Any]:
        return {"address_prefix": _properties(body).get("addressPrefix")}


class ManagedIdentity(RegionalResourceTask):
    """A user-assigned managed identity."""

    kind: ClassVar[str] = "ManagedIdentity"
    reference_fields: ClassVar[tuple[str, ...]] = ("resource_group",)

    resource_group: ResourceGroupRef = Field(alias="resourceGroup")

    def resource_id(self, context: RunContext) -> str:
        return (
            f"{_resource_group_id(context, self.resource_group.name)}"
            f"/providers/Microsoft.ManagedIdentity/userAssignedIdentities/{self.id.name}"
        )

"""Mock Azure Resource Manager state and existence operations.

Provides in-memory resources, resource groups and provider registrations
with the operations used for import validation: resource group existence,
resource existence by ID and provider API version lookup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import HttpResponseError

# API versions registered per provider namespace, keyed by resource type
DEFAULT_PROVIDER_API_VERSIONS: dict[str, dict[str, list[str]]] = {
    "Microsoft.Storage": {
        "storageAccounts": ["2023-05-01", "2023-01-01", "2024-01-01-preview"],
    },
    "Microsoft.Network": {
        "virtualNetworks": ["2023-09-01", "2023-11-01"],
        "virtualNetworks/subnets": ["2023-11-01"],
    },
    "Microsoft.Compute": {
        "disks": ["2023-10-02"],
        "virtualMachines": ["2024-03-01"],
    },
    "Microsoft.KeyVault": {
        "vaults": ["2023-07-01"],
    },
}


@dataclass
class MockResourceType:
    """Mirrors azure.mgmt.resource ProviderResourceType."""

    resource_type: str
    api_versions: list[str] = field(default_factory=list)


@dataclass
class MockProvider:
    """Mirrors azure.mgmt.resource Provider."""

    namespace: str
    resource_types: list[MockResourceType] = field(default_factory=list)


class MockResourceState:
    """In-memory view of the resources that exist in Azure.

    IDs are compared case-insensitively, as ARM does.
    """

    def __init__(self) -> None:
        self._resource_ids: set[str] = set()
        self._resource_groups: set[tuple[str, str]] = set()
        self._providers: dict[str, dict[str, list[str]]] = {
            namespace: dict(types) for namespace, types in DEFAULT_PROVIDER_API_VERSIONS.items()
        }
        self.existence_calls: list[tuple[str, str]] = []
        self.provider_calls: list[str] = []
        self.fail_status: int | None = None

    @property
    def resource_count(self) -> int:
        return len(self._resource_ids)

    def add_resource(self, resource_id: str) -> None:
        self._resource_ids.add(resource_id.lower())

    def delete_resource(self, resource_id: str) -> bool:
        key = resource_id.lower()
        if key in self._resource_ids:
            self._resource_ids.remove(key)
            return True
        return False

    def add_resource_group(self, subscription_id: str, name: str) -> None:
        self._resource_groups.add((subscription_id.lower(), name.lower()))

    def register_provider(self, namespace: str, resource_type: str, api_versions: list[str]) -> None:
        self._providers.setdefault(namespace, {})[resource_type] = list(api_versions)

    def resource_exists(self, resource_id: str) -> bool:
        return resource_id.lower() in self._resource_ids

    def resource_group_exists(self, subscription_id: str, name: str) -> bool:
        return (subscription_id.lower(), name.lower()) in self._resource_groups

    def get_provider(self, namespace: str) -> MockProvider:
        for registered, types in self._providers.items():
            if registered.lower() == namespace.lower():
                return MockProvider(
                    namespace=registered,
                    resource_types=[
                        MockResourceType(resource_type=name, api_versions=list(versions))
                        for name, versions in types.items()
                    ],
                )
        error = HttpResponseError(message=f"The resource provider '{namespace}' is not registered")
        error.status_code = 404
        raise error

    def check_failure(self) -> None:
        """Raise the configured ARM failure, if any."""
        if self.fail_status is None:
            return
        error = HttpResponseError(message=f"Simulated ARM failure ({self.fail_status})")
        error.status_code = self.fail_status
        raise error


class MockResourceClient:
    """Mock of azure.mgmt.resource.ResourceManagementClient.

    Exposes the resource_groups, resources and providers operation groups
    backed by a shared MockResourceState.
    """

    def __init__(self, state: MockResourceState, subscription_id: str) -> None:
        self._state = state
        self._subscription_id = subscription_id
        self.resource_groups = _MockResourceGroupsOperations(self)
        self.resources = _MockResourcesOperations(self)
        self.providers = _MockProvidersOperations(self)

    @property
    def subscription_id(self) -> str:
        return self._subscription_id


class _MockResourceGroupsOperations:
    def __init__(self, client: MockResourceClient) -> None:
        self._client = client
        self._state = client._state

    def check_existence(self, resource_group_name: str, **_kwargs: Any) -> bool:
        self._state.existence_calls.append(("resource_group", resource_group_name))
        self._state.check_failure()
        return self._state.resource_group_exists(self._client.subscription_id, resource_group_name)


class _MockResourcesOperations:
    def __init__(self, client: MockResourceClient) -> None:
        self._state = client._state

    def check_existence_by_id(self, resource_id: str, api_version: str, **_kwargs: Any) -> bool:
        """Check a resource by full ID.

        Args:
            resource_id: Full ARM resource ID.
            api_version: API version; must be non-empty like the real API.
        """
        if not api_version:
            raise ValueError("api_version is required")
        self._state.existence_calls.append((resource_id, api_version))
        self._state.check_failure()
        return self._state.resource_exists(resource_id)


class _MockProvidersOperations:
    def __init__(self, client: MockResourceClient) -> None:
        self._state = client._state

    def get(self, resource_provider_namespace: str, **_kwargs: Any) -> MockProvider:
        self._state.provider_calls.append(resource_provider_namespace)
        return self._state.get_provider(resource_provider_namespace)

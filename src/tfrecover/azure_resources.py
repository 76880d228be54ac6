"""Azure Resource Manager existence checks for import validation.

Before a resource is imported into state, its ARM ID is looked up so that a
typo or a resource deleted in the meantime fails fast with NOT_FOUND
instead of a half-finished Terraform import.

The subscription is taken from the resource ID itself, so one locator can
validate IDs across the several subscriptions a landscape spans.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from azure.core.exceptions import AzureError, HttpResponseError
from azure.mgmt.resource import ResourceManagementClient

from .engine import EngineError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedResourceId:
    """The parts of an ARM resource ID needed for an existence check."""

    subscription_id: str
    resource_group: str | None = None
    namespace: str | None = None
    resource_type: str | None = None  # nested types joined by "/"

    @property
    def is_subscription(self) -> bool:
        return self.resource_group is None and self.namespace is None

    @property
    def is_resource_group(self) -> bool:
        return self.resource_group is not None and self.namespace is None

    @property
    def full_type(self) -> str:
        return f"{self.namespace}/{self.resource_type}"


def parse_resource_id(resource_id: str) -> ParsedResourceId | None:
    """Parse an ARM ID, or return None if it is not one.

    Handles:
        /subscriptions/{sub}
        /subscriptions/{sub}/resourceGroups/{rg}
        /subscriptions/{sub}/resourceGroups/{rg}/providers/{ns}/{type}/{name}[/{child}/{name}...]
        extension resources, where the last /providers/ segment wins
    """
    if not resource_id or not resource_id.startswith("/subscriptions/"):
        return None

    parts = resource_id.strip("/").split("/")
    if len(parts) < 2 or not parts[1]:
        return None
    subscription_id = parts[1]

    resource_group = None
    if len(parts) >= 4 and parts[2].lower() == "resourcegroups":
        resource_group = parts[3]

    lowered = resource_id.lower()
    marker = "/providers/"
    if marker not in lowered:
        if len(parts) == 2 or (resource_group is not None and len(parts) == 4):
            return ParsedResourceId(subscription_id=subscription_id, resource_group=resource_group)
        return None

    provider_portion = resource_id[lowered.rindex(marker) + len(marker):]
    segments = provider_portion.split("/")
    # namespace, then type/name pairs
    if len(segments) < 3 or len(segments) % 2 == 0:
        return None

    return ParsedResourceId(
        subscription_id=subscription_id,
        resource_group=resource_group,
        namespace=segments[0],
        resource_type="/".join(segments[1::2]),
    )


def _pick_api_version(api_versions: list[str]) -> str | None:
    stable = [v for v in api_versions if "preview" not in v.lower()]
    candidates = stable or api_versions
    if not candidates:
        return None
    # Dates sort lexically; take the newest
    return sorted(candidates, reverse=True)[0]


class AzureResourceLocator:
    """Checks whether ARM resource IDs resolve to existing resources."""

    def __init__(self, credential: Any) -> None:
        self._credential = credential
        self._clients: dict[str, ResourceManagementClient] = {}
        self._api_versions: dict[str, str] = {}

    def _client(self, subscription_id: str) -> ResourceManagementClient:
        client = self._clients.get(subscription_id)
        if client is None:
            client = ResourceManagementClient(
                credential=self._credential,
                subscription_id=subscription_id,
            )
            self._clients[subscription_id] = client
        return client

    def _api_version(self, client: ResourceManagementClient, parsed: ParsedResourceId) -> str:
        cache_key = parsed.full_type.lower()
        cached = self._api_versions.get(cache_key)
        if cached:
            return cached

        provider = client.providers.get(parsed.namespace)
        for resource_type in provider.resource_types or []:
            if (resource_type.resource_type or "").lower() == parsed.resource_type.lower():
                version = _pick_api_version(list(resource_type.api_versions or []))
                if version:
                    self._api_versions[cache_key] = version
                    return version

        raise EngineError(f"No API version registered for resource type {parsed.full_type}")

    def exists(self, resource_id: str) -> bool:
        """Look up a resource ID.

        IDs that are not ARM resource IDs (for example Key Vault secret URLs
        or role definition scopes Terraform accepts) cannot be checked here
        and are reported as existing; Terraform's own import will validate them.

        Raises:
            EngineError: If ARM cannot be queried.
        """
        parsed = parse_resource_id(resource_id)
        if parsed is None or parsed.is_subscription:
            logger.info(
                "Resource ID cannot be checked against ARM, deferring to import",
                extra={"resource_id": resource_id},
            )
            return True

        client = self._client(parsed.subscription_id)
        try:
            if parsed.is_resource_group:
                found = client.resource_groups.check_existence(parsed.resource_group)
            else:
                api_version = self._api_version(client, parsed)
                found = client.resources.check_existence_by_id(resource_id, api_version)
        except HttpResponseError as e:
            if e.status_code == 404:
                return False
            error_code = e.error.code if e.error else None
            logger.error(
                f"Existence check failed with Azure API error: {e}",
                extra={"status_code": e.status_code, "error_code": error_code},
            )
            raise EngineError(f"Azure API error ({e.status_code}): {e.message}") from e
        except AzureError as e:
            logger.error(f"Existence check failed with Azure error: {e}")
            raise EngineError(f"Azure error: {e}") from e

        logger.info(
            "Resource existence checked",
            extra={"resource_id": resource_id, "exists": bool(found)},
        )
        return bool(found)

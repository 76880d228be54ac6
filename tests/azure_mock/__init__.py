"""Azure API mock for testing existence checks without Azure connectivity.

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext(resource_ids=[disk_id]) as azure:
        locator = AzureResourceLocator(create_mock_credential())
        assert locator.exists(disk_id)
        assert azure.state.existence_calls
"""

from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .resources import MockResourceClient, MockResourceState

__all__ = [
    "MockAzureContext",
    "MockManagedIdentityCredential",
    "MockResourceClient",
    "MockResourceState",
    "create_mock_credential",
]

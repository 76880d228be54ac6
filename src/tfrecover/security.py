"""Security enforcement for secretless Terraform runs.

Terraform and the Azure SDK both authenticate through a Managed Identity:
- the azurerm provider and backend get ARM_USE_MSI=true
- resource existence checks use ManagedIdentityCredential

SECURITY INVARIANTS:
1. No service principal secret, certificate or storage access key may be
   present in the environment handed to this tool or to Terraform.
2. ManagedIdentityCredential is the ONLY credential type created here.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "ARM_CLIENT_SECRET",
    "ARM_CLIENT_CERTIFICATE_PATH",
    "ARM_CLIENT_CERTIFICATE_PASSWORD",
    "ARM_ACCESS_KEY",
    "ARM_SAS_TOKEN",
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Credential variable {env_var} is set. This tool authenticates Terraform and "
    "Azure Resource Manager with a Managed Identity only. Remove the variable and "
    "grant the identity the RBAC roles it needs on the target subscription and "
    "state storage account."
)


class SecretlessViolationError(Exception):
    """Raised when a credential secret is found in the environment.

    This is fatal: no Terraform command may run with such an environment.
    """

    pass


def enforce_secretless_architecture(environ: Mapping[str, str] | None = None) -> None:
    """Refuse to continue if any credential secret is present.

    Args:
        environ: Environment to inspect. Defaults to the process environment.

    Raises:
        SecretlessViolationError: If any forbidden variable has a value.
    """
    env = os.environ if environ is None else environ
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if env.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "run_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.debug(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_managed_identity_credential(
    client_id: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying secretless architecture.

    Args:
        client_id: Client ID of a user-assigned identity. None selects the
                   system-assigned identity.
        environ: Environment to check, normally the one captured in a
                 Context. Defaults to os.environ.
    """
    enforce_secretless_architecture(environ)

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()

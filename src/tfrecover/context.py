"""Explicit execution context for engine operations.

Subscription, tenant and identity settings are read once at the CLI edge
and passed into every engine call. Nothing below the CLI reads them from
the process environment.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .security import enforce_secretless_architecture

# Variables copied from the caller's environment into Terraform's
PASSTHROUGH_ENV_VARS: tuple[str, ...] = (
    "PATH",
    "HOME",
    "TMPDIR",
    "TF_PLUGIN_CACHE_DIR",
    "TF_CLI_CONFIG_FILE",
    "HTTPS_PROXY",
    "HTTP_PROXY",
    "NO_PROXY",
    "IDENTITY_ENDPOINT",
    "IDENTITY_HEADER",
    "MSI_ENDPOINT",
    "MSI_SECRET",
)


@dataclass(frozen=True)
class Context:
    """Credentials and environment for one deployment unit."""

    subscription_id: str = ""
    tenant_id: str = ""
    client_id: str | None = None
    base_env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Context:
        """Build a context from ARM_* variables.

        Raises:
            SecretlessViolationError: If a credential secret is present.
        """
        env = os.environ if environ is None else environ
        enforce_secretless_architecture(env)
        return cls(
            subscription_id=env.get("ARM_SUBSCRIPTION_ID", ""),
            tenant_id=env.get("ARM_TENANT_ID", ""),
            client_id=env.get("ARM_CLIENT_ID") or None,
            base_env={key: env[key] for key in PASSTHROUGH_ENV_VARS if key in env},
        )

    def terraform_environment(self) -> dict[str, str]:
        """Subprocess environment for Terraform commands."""
        env = dict(self.base_env)
        env["TF_IN_AUTOMATION"] = "true"
        env["TF_INPUT"] = "0"
        env["ARM_USE_MSI"] = "true"
        if self.subscription_id:
            env["ARM_SUBSCRIPTION_ID"] = self.subscription_id
        if self.tenant_id:
            env["ARM_TENANT_ID"] = self.tenant_id
        if self.client_id:
            env["ARM_CLIENT_ID"] = self.client_id
        return env

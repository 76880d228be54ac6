"""Configuration management with validation.

Bounds are enforced at configuration load time so that a misconfigured
environment fails before any Terraform command runs.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_ATTEMPTS = 5
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 20

DEFAULT_PARALLELISM = 10
MIN_PARALLELISM = 1
MAX_PARALLELISM = 100

# Transient retries wait attempt * base seconds before the next apply
DEFAULT_RETRY_BACKOFF_SECONDS = 30

DEFAULT_PLAN_TIMEOUT_SECONDS = 300
DEFAULT_APPLY_TIMEOUT_SECONDS = 1800
DEFAULT_IMPORT_TIMEOUT_SECONDS = 180

# Security constraints - enforced limits to prevent abuse
MAX_DECLARATIONS_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max declarations file
MAX_APPLY_OUTPUT_EVENTS = 100_000  # Max JSON events parsed from one apply

# Resource types whose replacement or deletion loses data or breaks the landscape
DEFAULT_DESTRUCTIVE_RESOURCE_PATTERNS: tuple[str, ...] = (
    "azurerm_storage_account",
    "azurerm_key_vault",
    r"azurerm_.*virtual_machine",
    "azurerm_managed_disk",
    "azurerm_virtual_network",
    "azurerm_subnet",
    "azurerm_netapp_volume",
)


@dataclass(frozen=True)
class Config:
    """Tool configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    terraform_bin: str = "terraform"

    # Recovery loop
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    parallelism: int = DEFAULT_PARALLELISM
    fail_fast: bool = False
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS

    # Timeouts for the external terraform process
    plan_timeout_seconds: int = DEFAULT_PLAN_TIMEOUT_SECONDS
    apply_timeout_seconds: int = DEFAULT_APPLY_TIMEOUT_SECONDS
    import_timeout_seconds: int = DEFAULT_IMPORT_TIMEOUT_SECONDS

    # Plan analysis
    destructive_resource_patterns: tuple[str, ...] = field(
        default_factory=lambda: DEFAULT_DESTRUCTIVE_RESOURCE_PATTERNS
    )

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.terraform_bin:
            errors.append("TERRAFORM_BIN must not be empty")

        if not (MIN_MAX_ATTEMPTS <= self.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(
                f"TF_MAX_ATTEMPTS must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}"
            )

        if not (MIN_PARALLELISM <= self.parallelism <= MAX_PARALLELISM):
            errors.append(
                f"TF_PARALLELISM must be between {MIN_PARALLELISM} and {MAX_PARALLELISM}"
            )

        if self.retry_backoff_seconds < 0:
            errors.append("TF_RETRY_BACKOFF_SECONDS must not be negative")

        for name, value in (
            ("TF_PLAN_TIMEOUT", self.plan_timeout_seconds),
            ("TF_APPLY_TIMEOUT", self.apply_timeout_seconds),
            ("TF_IMPORT_TIMEOUT", self.import_timeout_seconds),
        ):
            if value < 1:
                errors.append(f"{name} must be at least 1 second")

        for pattern in self.destructive_resource_patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                errors.append(f"Invalid destructive resource pattern '{pattern}': {e}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TERRAFORM_BIN: Terraform executable (default: terraform)
            TF_MAX_ATTEMPTS: Maximum apply attempts per run (default: 5)
            TF_PARALLELISM: Terraform -parallelism value (default: 10)
            TF_FAIL_FAST: Abort the run on the first unrecoverable error (default: false)
            TF_RETRY_BACKOFF_SECONDS: Backoff base for transient retries (default: 30)
            TF_PLAN_TIMEOUT: Plan timeout in seconds (default: 300)
            TF_APPLY_TIMEOUT: Apply timeout in seconds (default: 1800)
            TF_IMPORT_TIMEOUT: Import timeout in seconds (default: 180)
            DESTRUCTIVE_RESOURCE_PATTERNS: Comma-separated regexes replacing the defaults
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_patterns(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            if not value:
                return DEFAULT_DESTRUCTIVE_RESOURCE_PATTERNS
            return tuple(item.strip() for item in value.split(",") if item.strip())

        return cls(
            terraform_bin=os.environ.get("TERRAFORM_BIN", "terraform"),
            max_attempts=get_int("TF_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            parallelism=get_int("TF_PARALLELISM", DEFAULT_PARALLELISM),
            fail_fast=get_bool("TF_FAIL_FAST", False),
            retry_backoff_seconds=get_float(
                "TF_RETRY_BACKOFF_SECONDS", DEFAULT_RETRY_BACKOFF_SECONDS
            ),
            plan_timeout_seconds=get_int("TF_PLAN_TIMEOUT", DEFAULT_PLAN_TIMEOUT_SECONDS),
            apply_timeout_seconds=get_int("TF_APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT_SECONDS),
            import_timeout_seconds=get_int("TF_IMPORT_TIMEOUT", DEFAULT_IMPORT_TIMEOUT_SECONDS),
            destructive_resource_patterns=get_patterns("DESTRUCTIVE_RESOURCE_PATTERNS"),
        )

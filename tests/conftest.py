"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for fakes and azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from fakes import FakeEngine  # noqa: E402
from tfrecover.config import Config  # noqa: E402
from tfrecover.context import Context  # noqa: E402
from tfrecover.declarations import Declarations  # noqa: E402
from tfrecover.models import StateStoreRef  # noqa: E402

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"


@pytest.fixture
def module_dir(tmp_path: Path) -> Path:
    """A Terraform module directory with one configuration file."""
    directory = tmp_path / "module"
    directory.mkdir()
    (directory / "main.tf").write_text('resource "azurerm_resource_group" "rg" {}\n')
    return directory


@pytest.fixture
def declarations(module_dir: Path) -> Declarations:
    return Declarations(working_dir=module_dir)


@pytest.fixture
def store(tmp_path: Path) -> StateStoreRef:
    return StateStoreRef.parse(str(tmp_path / "terraform.tfstate"))


@pytest.fixture
def ctx() -> Context:
    return Context(subscription_id=SUBSCRIPTION_ID, tenant_id="tenant", client_id="client")


@pytest.fixture
def config() -> Config:
    # No backoff sleeps in tests
    return Config(retry_backoff_seconds=0)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()

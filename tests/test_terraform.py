"""Tests for the Terraform CLI engine with subprocess.run patched out."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

import pytest

from tfrecover.config import Config
from tfrecover.context import Context
from tfrecover.declarations import Declarations
from tfrecover.engine import ConcurrencyError, EngineError
from tfrecover.models import StateStoreRef
from tfrecover.terraform import TerraformEngine, _restore_local_state, parse_json_lines

REMOTE = StateStoreRef.parse("azurerm://sub-1/rg-tfstate/sttfstate/tfstate/sap/DEV.tfstate")


class FakeRun:
    """Replacement for subprocess.run returning canned results per subcommand."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.responses: dict[str, tuple[int, str, str]] = {}
        self.raise_for: dict[str, BaseException] = {}

    def respond(self, subcommand: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.responses[subcommand] = (returncode, stdout, stderr)

    def __call__(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append({"cmd": cmd, **kwargs})
        subcommand = " ".join(cmd[1:3]) if cmd[1] == "state" else cmd[1]
        if subcommand in self.raise_for:
            raise self.raise_for[subcommand]
        returncode, stdout, stderr = self.responses.get(subcommand, (0, "", ""))
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def commands(self) -> list[list[str]]:
        return [call["cmd"] for call in self.calls]


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> FakeRun:
    runner = FakeRun()
    monkeypatch.setattr("tfrecover.terraform.subprocess.run", runner)
    return runner


@pytest.fixture
def terraform() -> TerraformEngine:
    return TerraformEngine(Config(terraform_bin="/usr/local/bin/terraform"))


class TestProcessHandling:
    """Tests for init, environment and process failures."""

    def test_init_runs_once_per_directory_and_store(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        terraform.state_remove(ctx, declarations, store, "azurerm_resource_group.rg")
        terraform.state_remove(ctx, declarations, store, "azurerm_resource_group.rg")

        assert [c[1] for c in fake_run.commands()] == ["init", "state", "state"]

    def test_environment_is_built_from_context(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        terraform.state_remove(ctx, declarations, store, "azurerm_resource_group.rg")

        env = fake_run.calls[0]["env"]
        assert env["ARM_SUBSCRIPTION_ID"] == ctx.subscription_id
        assert env["ARM_USE_MSI"] == "true"
        assert env["TF_IN_AUTOMATION"] == "true"
        assert fake_run.calls[0]["cwd"] == declarations.working_dir.resolve()

    def test_remote_store_configures_backend(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations
    ) -> None:
        terraform.state_remove(ctx, declarations, REMOTE, "azurerm_resource_group.rg")

        init = fake_run.commands()[0]
        assert "-reconfigure" in init
        assert "-backend-config=storage_account_name=sttfstate" in init
        assert "-backend-config=key=sap/DEV.tfstate" in init
        assert "-backend-config=use_msi=true" in init
        assert not any(arg.startswith("-state=") for arg in fake_run.commands()[1])

    def test_init_failure(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        fake_run.respond("init", 1, stderr="Error: Failed to query available provider packages")

        with pytest.raises(EngineError, match="init failed"):
            terraform.state_remove(ctx, declarations, store, "azurerm_resource_group.rg")

    def test_lock_contention_raises(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        fake_run.respond("state rm", 1, stderr="Error acquiring the state lock\n\nLock Info: ...")

        with pytest.raises(ConcurrencyError):
            terraform.state_remove(ctx, declarations, store, "azurerm_resource_group.rg")

    def test_timeout(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        fake_run.raise_for["import"] = subprocess.TimeoutExpired(["terraform"], 180)

        with pytest.raises(EngineError, match="timed out"):
            terraform.state_import(ctx, declarations, store, "azurerm_resource_group.rg", "/subscriptions/s")

    def test_missing_binary(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        fake_run.raise_for["init"] = FileNotFoundError()

        with pytest.raises(EngineError, match="not found"):
            terraform.state_remove(ctx, declarations, store, "azurerm_resource_group.rg")


class TestPlanAndApply:
    def test_plan_with_changes(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        plan_json = {"resource_changes": [{"address": "azurerm_resource_group.rg"}]}
        fake_run.respond("plan", 2)
        fake_run.respond("show", 0, stdout=json.dumps(plan_json))

        output = terraform.plan(ctx, declarations, store)

        assert output.exit_code == 2
        assert output.plan_json == plan_json
        plan_cmd = fake_run.commands()[1]
        assert "-detailed-exitcode" in plan_cmd
        assert "-lock=false" in plan_cmd
        assert f"-state={store.local_path.resolve()}" in plan_cmd

    def test_plan_failure_returns_diagnostics(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        fake_run.respond("plan", 1, stderr="Error: Reference to undeclared resource")

        output = terraform.plan(ctx, declarations, store)

        assert output.exit_code == 1
        assert output.plan_json is None
        assert "undeclared resource" in output.raw_diagnostics
        assert "show" not in [c[1] for c in fake_run.commands()]

    def test_unparsable_plan_json(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        fake_run.respond("show", 0, stdout="not json")

        with pytest.raises(EngineError, match="Unparsable"):
            terraform.plan(ctx, declarations, store)

    def test_apply_collects_events(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        events = [
            {"@level": "info", "@message": "Terraform 1.7.5", "type": "version"},
            {"@level": "error", "@message": "Error: boom", "type": "diagnostic"},
        ]
        stdout = "\n".join(json.dumps(e) for e in events)
        fake_run.respond("apply", 1, stdout=stdout, stderr="exit status 1")

        output = terraform.apply(ctx, declarations, store, parallelism=4, auto_approve=True)

        assert not output.ok
        assert list(output.events) == events
        apply_cmd = fake_run.commands()[1]
        assert "-parallelism=4" in apply_cmd
        assert "-auto-approve" in apply_cmd
        assert "-json" in apply_cmd

    def test_apply_requires_auto_approve(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        with pytest.raises(EngineError):
            terraform.apply(ctx, declarations, store, parallelism=1, auto_approve=False)
        assert fake_run.calls == []

    def test_variables_passed_to_plan(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, module_dir: Path, store
    ) -> None:
        declarations = Declarations(working_dir=module_dir, variables={"sid": "PRD"})
        fake_run.respond("show", 0, stdout="{}")

        terraform.plan(ctx, declarations, store)

        assert "-var=sid=PRD" in fake_run.commands()[1]


class TestStateCommands:
    """Tests for list, import and snapshots."""

    def test_list_of_missing_local_file_is_empty(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        assert terraform.state_list(ctx, declarations, store) == []
        assert fake_run.calls == []

    def test_list_parses_lines(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        store.local_path.write_text("{}")
        fake_run.respond("state list", 0, stdout="azurerm_resource_group.rg\nmodule.a.azurerm_subnet.s\n\n")

        assert terraform.state_list(ctx, declarations, store) == [
            "azurerm_resource_group.rg",
            "module.a.azurerm_subnet.s",
        ]

    def test_list_of_empty_remote_state(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations
    ) -> None:
        fake_run.respond("state list", 1, stderr="No state file was found!")

        assert terraform.state_list(ctx, declarations, REMOTE) == []

    def test_import_uses_import_var_files(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, module_dir: Path, store
    ) -> None:
        (module_dir / "main.tfvars").write_text("")
        (module_dir / "import.tfvars").write_text("")
        declarations = Declarations(
            working_dir=module_dir,
            var_files=[module_dir / "main.tfvars"],
            import_var_files=[module_dir / "import.tfvars"],
        )

        terraform.state_import(ctx, declarations, store, "azurerm_resource_group.rg", "/subscriptions/s")

        cmd = fake_run.commands()[1]
        assert f"-var-file={(module_dir / 'import.tfvars').resolve()}" in cmd
        assert f"-var-file={(module_dir / 'main.tfvars').resolve()}" not in cmd
        assert cmd[-2:] == ["azurerm_resource_group.rg", "/subscriptions/s"]

    def test_local_snapshot_and_restore(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations, store
    ) -> None:
        store.local_path.write_bytes(b'{"serial": 1}')
        snapshot = terraform.snapshot_state(ctx, declarations, store)
        store.local_path.write_bytes(b'{"serial": 2}')

        terraform.restore_state(ctx, declarations, store, snapshot)

        assert store.local_path.read_bytes() == b'{"serial": 1}'
        assert fake_run.calls == []

    def test_restore_of_absent_snapshot_removes_file(self, tmp_path: Path) -> None:
        path = tmp_path / "terraform.tfstate"
        path.write_text("{}")

        _restore_local_state(path, None)

        assert not path.exists()

    def test_remote_snapshot_uses_pull_and_push(
        self, fake_run: FakeRun, terraform: TerraformEngine, ctx: Context, declarations
    ) -> None:
        fake_run.respond("state pull", 0, stdout='{"serial": 7}\n')

        snapshot = terraform.snapshot_state(ctx, declarations, REMOTE)
        terraform.restore_state(ctx, declarations, REMOTE, snapshot)

        assert snapshot == b'{"serial": 7}'
        push = fake_run.commands()[-1]
        assert push[1:4] == ["state", "push", "-force"]


class TestParseJsonLines:
    def test_skips_noise(self) -> None:
        output = 'Initializing...\n{"@level": "info"}\n{broken\n["list"]\n'

        assert parse_json_lines(output) == [{"@level": "info"}]

    def test_error_events_kept_past_event_cap(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Diagnostics arrive after the progress events and must survive the cap."""
        monkeypatch.setattr("tfrecover.terraform.MAX_APPLY_OUTPUT_EVENTS", 3)
        progress = [json.dumps({"@level": "info", "@message": f"step {i}"}) for i in range(4)]
        error = {"@level": "error", "@message": "Error: A resource with the ID already exists"}
        output = "\n".join([*progress, json.dumps(error)])

        events = parse_json_lines(output)

        assert len(events) == 4
        assert events[:3] == [json.loads(line) for line in progress[:3]]
        assert events[-1] == error

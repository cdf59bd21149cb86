import json

import pytest
from typer.testing import CliRunner

from conftest import LIVE_FILES, FakeController, write_tree
from homestack import __version__
from homestack import cli
from homestack.config import RetentionSettings, TrackedService, save_config

runner = CliRunner()


@pytest.fixture
def cli_env(config, tmp_path, monkeypatch):
    # no published ports: keep the accessibility probes off the network
    quiet = config.model_copy(update={
        "services": [TrackedService(name=s.name) for s in config.services],
    })
    path = save_config(quiet, tmp_path / "config.json")
    controller = FakeController(running=quiet.service_names)
    monkeypatch.setattr(cli, "build_controller", lambda cfg: controller)
    return path, controller, quiet

def invoke(path, *args, **kwargs):
    return runner.invoke(cli.app, ["--config", str(path), *args], **kwargs)


def test_version():
    result = runner.invoke(cli.app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output

def test_snapshot_create_and_list(cli_env):
    path, controller, _ = cli_env
    result = invoke(path, "snapshot", "create", "--kind", "quick")
    assert result.exit_code == 0, result.output
    assert controller.actions() == []

    listed = invoke(path, "snapshot", "list", "--json")
    assert listed.exit_code == 0
    [entry] = json.loads(listed.stdout)
    assert entry["kind"] == "quick"
    assert entry["id"].startswith("configs_")

def test_snapshot_create_applies_retention(cli_env, tmp_path):
    _, _, config = cli_env
    path = save_config(config.model_copy(update={"retention": RetentionSettings(max_count=2)}), tmp_path / "keep-two.json")
    for _ in range(3):
        assert invoke(path, "snapshot", "create", "--kind", "quick").exit_code == 0
    assert len(json.loads(invoke(path, "snapshot", "list", "--json").stdout)) == 2

    assert invoke(path, "snapshot", "create", "--kind", "quick", "--no-expire").exit_code == 0
    assert len(json.loads(invoke(path, "snapshot", "list", "--json").stdout)) == 3

def test_unknown_service_exits_with_error(cli_env):
    path, _, _ = cli_env
    result = invoke(path, "snapshot", "create", "--kind", "quick", "--service", "plex")
    assert result.exit_code == 2

def test_restore_dry_run_then_forced_restore(cli_env):
    path, controller, config = cli_env
    assert invoke(path, "snapshot", "create", "--kind", "quick").exit_code == 0
    write_tree(config.config_root, {"sonarr/config.xml": "<Config>changed</Config>"})

    dry = invoke(path, "restore", "--latest", "--dry-run")
    assert dry.exit_code == 0, dry.output
    assert (config.config_root / "sonarr/config.xml").read_text() == "<Config>changed</Config>"

    done = invoke(path, "restore", "--latest", "--force", "--no-validate")
    assert done.exit_code == 0, done.output
    assert (config.config_root / "sonarr/config.xml").read_text() == LIVE_FILES["sonarr/config.xml"]
    assert controller.actions() == ["stop", "start"]

def test_restore_declined_changes_nothing(cli_env):
    path, controller, config = cli_env
    assert invoke(path, "snapshot", "create", "--kind", "quick").exit_code == 0
    write_tree(config.config_root, {"sonarr/config.xml": "<Config>changed</Config>"})

    result = invoke(path, "restore", "--latest", input="n\n")
    assert result.exit_code == 0
    assert (config.config_root / "sonarr/config.xml").read_text() == "<Config>changed</Config>"
    assert controller.actions() == []

def test_restore_without_snapshots_fails(cli_env):
    path, _, _ = cli_env
    assert invoke(path, "restore", "--latest", "--force").exit_code == 2

def test_health_json(cli_env):
    path, _, _ = cli_env
    result = invoke(path, "health", "--json", "--service", "sonarr")
    assert result.exit_code in (0, 1, 2)
    report = json.loads(result.stdout)
    assert report["exit_code"] == result.exit_code
    assert {c["category"] for c in report["checks"]} >= {"docker", "container", "config"}

def test_health_quiet_prints_nothing(cli_env):
    path, _, _ = cli_env
    result = invoke(path, "health", "--quiet")
    assert result.stdout == ""

def test_config_init_refuses_to_overwrite(tmp_path):
    path = tmp_path / "fresh.json"
    assert runner.invoke(cli.app, ["--config", str(path), "config", "init"]).exit_code == 0
    assert path.is_file()
    assert runner.invoke(cli.app, ["--config", str(path), "config", "init"]).exit_code == 2

def test_forced_restore_needs_an_explicit_snapshot(cli_env):
    path, controller, _ = cli_env
    assert invoke(path, "snapshot", "create", "--kind", "quick").exit_code == 0
    result = invoke(path, "restore", "--force")
    assert result.exit_code == 2
    assert "Select snapshot number" not in result.output
    assert controller.actions() == []

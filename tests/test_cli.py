"""
Tests for CLI commands — plan, apply, run, status, clean, config.
"""

import json
from pathlib import Path

from click.testing import CliRunner

from procon.core.persistence.state_file import StateStore
from procon.main import EXIT_LOCKED, cli


def _invoke(config: Path, *args: str):
    return CliRunner().invoke(cli, ["--config", str(config), *args])


class TestCLIGlobal:
    """Tests for global CLI behavior."""

    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "declarative project lifecycle manager" in result.output
        for command in ("plan", "apply", "run", "run-proxy", "status", "clean", "config"):
            assert command in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_missing_config(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = CliRunner().invoke(cli, ["plan"])
        assert result.exit_code == 1
        assert "No procon.yml" in result.output

    def test_config_from_env(self, write_config, tmp_path: Path, monkeypatch):
        write_config({"web": {"build": "true"}})
        monkeypatch.chdir("/")
        result = CliRunner().invoke(
            cli, ["plan", "--json"], env={"PROCON_CONFIG": str(tmp_path / "procon.yml")}
        )
        assert result.exit_code == 0
        assert json.loads(result.output)["added"] == ["web"]


class TestPlanCommand:
    def test_plan_text(self, write_config):
        config = write_config({"web": {"build": "make all"}})
        result = _invoke(config, "plan")
        assert result.exit_code == 0
        assert "1 to add" in result.output
        assert "+ web" in result.output
        assert "make all" in result.output

    def test_plan_json(self, write_config):
        config = write_config({
            "web": {"port": 8080, "start": "./serve"},
            "job": {"build": "make"},
        })
        result = _invoke(config, "plan", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["has_changes"] is True
        assert data["added"] == ["job", "web"]
        assert data["artifacts"]["web"] == {"daemon": True, "proxy": True}
        assert data["steps"]["job"]["build"][0]["command"] == "make"

    def test_plan_changes_nothing(self, write_config, tmp_path: Path):
        config = write_config({"web": {"build": "touch built"}})
        _invoke(config, "plan")
        assert not (tmp_path / "built").exists()
        assert not (tmp_path / ".procon" / "state.json").exists()

    def test_plan_config_error(self, write_config):
        config = write_config({"web": {"build": [{"task": "missing"}]}})
        result = _invoke(config, "plan")
        assert result.exit_code == 1
        assert "unknown task 'missing'" in result.output


class TestApplyCommand:
    def test_apply_then_plan(self, write_config, tmp_path: Path):
        config = write_config({"web": {"build": "touch built"}})

        result = _invoke(config, "apply", "--safe")
        assert result.exit_code == 0
        assert "✓ web" in result.output
        assert (tmp_path / "built").exists()

        data = json.loads(_invoke(config, "plan", "--json").output)
        assert data["has_changes"] is False
        assert data["unchanged"] == ["web"]

    def test_apply_json(self, write_config):
        config = write_config({"web": {"build": "true"}})
        result = _invoke(config, "apply", "--safe", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["report"]["status"] == "ok"
        assert data["report"]["projects"]["web"]["state"] == "applied"

    def test_apply_nothing_to_do(self, write_config):
        config = write_config({"web": {"build": "true"}})
        _invoke(config, "apply", "--safe")
        result = _invoke(config, "apply", "--safe")
        assert result.exit_code == 0
        assert "No changes" in result.output

    def test_apply_failure_exit_code(self, write_config):
        config = write_config({
            "bad": {"build": "echo compiler exploded >&2; exit 1"},
            "good": {"build": "true"},
        })
        result = _invoke(config, "apply", "--safe")
        assert result.exit_code == 1
        assert "✗ bad" in result.output
        assert "compiler exploded" in result.output
        assert "✓ good" in result.output

    def test_apply_locked(self, write_config, tmp_path: Path):
        config = write_config({"web": {"build": "true"}})
        with StateStore(tmp_path / ".procon").lock():
            result = _invoke(config, "apply", "--safe")
        assert result.exit_code == EXIT_LOCKED
        assert "Apply in progress" in result.output

    def test_apply_mock(self, write_config, tmp_path: Path):
        config = write_config({"web": {"build": "touch built"}})
        result = _invoke(config, "apply", "--mock")
        assert result.exit_code == 0
        assert "[mock]" in result.output
        assert not (tmp_path / "built").exists()


class TestRunCommand:
    def test_run_phase(self, write_config, tmp_path: Path):
        config = write_config({"web": {"phases": {"deploy": "touch deployed"}}})
        result = _invoke(config, "run", "deploy")
        assert result.exit_code == 0
        assert (tmp_path / "deployed").exists()
        # run never records applied state
        assert not (tmp_path / ".procon" / "state.json").exists()

    def test_run_dry_run(self, write_config, tmp_path: Path):
        config = write_config({"web": {"build": "touch built"}})
        result = _invoke(config, "run", "build", "--dry-run")
        assert result.exit_code == 0
        assert "dry-run" in result.output
        assert not (tmp_path / "built").exists()

    def test_run_undeclared_phase(self, write_config):
        config = write_config({"web": {"build": "true"}})
        result = _invoke(config, "run", "deploy")
        assert result.exit_code == 1
        assert "deploy" in result.output

    def test_run_failure(self, write_config):
        config = write_config({"web": {"build": "exit 9"}})
        result = _invoke(config, "run", "build")
        assert result.exit_code == 1
        assert "✗ web" in result.output
        assert "(in build)" in result.output

    def test_run_selected_project(self, write_config, tmp_path: Path):
        config = write_config({"a": {"build": "touch a"}, "b": {"build": "touch b"}})
        result = _invoke(config, "run", "build", "-p", "b")
        assert result.exit_code == 0
        assert (tmp_path / "b").exists()
        assert not (tmp_path / "a").exists()


class TestStatusCommand:
    def test_status_empty(self, write_config):
        config = write_config({"web": {"build": "true"}})
        result = _invoke(config, "status")
        assert result.exit_code == 0
        assert "Applied projects: 0" in result.output
        assert "Pending changes: 1" in result.output

    def test_status_json_after_apply(self, write_config):
        config = write_config({"web": {"build": "true"}})
        _invoke(config, "apply", "--safe")
        result = _invoke(config, "status", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert list(data["projects"]) == ["web"]
        assert data["last_operation"]["status"] == "ok"
        assert data["pending"]["changes"] == []
        assert data["recent"][0]["operation_type"] == "apply"


class TestCleanCommand:
    def test_clean(self, write_config, tmp_path: Path):
        config = write_config({"web": {"build": "true"}})
        orphan = tmp_path / ".procon" / "artifacts" / "old"
        orphan.mkdir(parents=True)

        dry = _invoke(config, "clean", "--dry-run")
        assert dry.exit_code == 0
        assert "Would remove" in dry.output
        assert orphan.exists()

        result = _invoke(config, "clean", "--json")
        assert json.loads(result.output)["removed"] == ["old"]
        assert not orphan.exists()

    def test_nothing_to_clean(self, write_config):
        config = write_config({"web": {"build": "true"}})
        result = _invoke(config, "clean")
        assert result.exit_code == 0
        assert "Nothing to clean" in result.output


class TestConfigCommands:
    def test_check_valid(self, write_config):
        config = write_config({"web": {"build": "true"}})
        result = _invoke(config, "config", "check")
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_check_warnings(self, write_config):
        config = write_config(
            {
                "a": {"port": 8080, "build": "true"},
                "b": {"port": 8080, "dir": "missing", "proxy": {"domain": "b.test"}},
            },
            tasks={"unused": {"steps": ["true"]}},
        )
        result = _invoke(config, "config", "check", "--json")
        assert result.exit_code == 0
        warnings = json.loads(result.output)["warnings"]
        assert any("Port 8080" in w for w in warnings)
        assert any("'b' declares no phases" in w for w in warnings)
        assert any("does not exist yet" in w for w in warnings)
        assert any("Task 'unused'" in w for w in warnings)

    def test_check_invalid(self, write_config):
        config = write_config({"web": {"build": "echo {{nope}}"}})
        result = _invoke(config, "config", "check")
        assert result.exit_code == 1
        assert "unbound placeholder" in result.output

    def test_show(self, write_config):
        config = write_config({"web": {"build": "make"}})
        result = _invoke(config, "config", "show", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["projects"]["web"]["phases"]["build"][0]["run"] == ["make"]
        assert data["source"] == str(config.resolve())

    def test_show_yaml(self, write_config):
        config = write_config({"web": {"build": "make"}})
        result = _invoke(config, "config", "show")
        assert result.exit_code == 0
        assert "projects:" in result.output

"""
Tests for adapters — registry dispatch, mock, shell, filesystem, packages.
"""

import zipfile
from pathlib import Path

import pytest

from procon.adapters.base import ExecutionContext
from procon.adapters.mock import MockAdapter
from procon.adapters.packages import PackageAdapter
from procon.adapters.proxy import ProxyAdapter
from procon.adapters.registry import AdapterRegistry, default_registry
from procon.adapters.shell.command import ShellCommandAdapter, nix_wrap
from procon.adapters.shell.filesystem import FilesystemAdapter
from procon.adapters.systemd import SystemdAdapter
from procon.core.models.action import Action
from procon.core.models.settings import ProxySettings, Settings


def _action(adapter: str, action_id: str = "test:1", **params) -> Action:
    return Action(id=action_id, adapter=adapter, params=params)


# ── Registry ─────────────────────────────────────────────────────────


class TestAdapterRegistry:
    def test_register_and_get(self):
        registry = AdapterRegistry()
        registry.register(MockAdapter("systemd"))
        assert registry.get("systemd") is not None
        assert registry.list_adapters() == ["systemd"]

        registry.unregister("systemd")
        assert registry.get("systemd") is None

    def test_unknown_adapter(self):
        receipt = AdapterRegistry().execute_action(_action("nope"))
        assert receipt.failed
        assert "No adapter registered" in receipt.error

    def test_mock_mode(self):
        registry = AdapterRegistry(mock_mode=True)
        registry.register(ShellCommandAdapter())
        receipt = registry.execute_action(_action("shell", command="exit 1"))
        assert receipt.ok
        assert receipt.metadata["mock"] is True

    def test_mock_mode_with_custom_adapter(self):
        mock = MockAdapter("anything")
        registry = AdapterRegistry()
        registry.set_mock_mode(True, mock)
        registry.execute_action(_action("shell", command="true"))
        assert mock.call_count == 1

    def test_mocked_names_only(self, tmp_path: Path):
        registry = AdapterRegistry(mocked=["systemd"])
        registry.register(ShellCommandAdapter())
        registry.register(SystemdAdapter())

        faked = registry.execute_action(_action("systemd", operation="restart", unit="x.service"))
        assert faked.ok
        assert faked.output.startswith("[mock]")

        real = registry.execute_action(_action("shell", command="exit 2"), cwd=str(tmp_path))
        assert real.failed
        assert real.return_code == 2

    def test_validation_failure(self):
        registry = AdapterRegistry()
        registry.register(ShellCommandAdapter())
        receipt = registry.execute_action(_action("shell"))
        assert receipt.failed
        assert "Missing required param: 'command'" in receipt.error

    def test_dry_run_skips(self, tmp_path: Path):
        registry = AdapterRegistry()
        registry.register(ShellCommandAdapter())
        receipt = registry.execute_action(
            _action("shell", command=f"touch {tmp_path / 'x'}"),
            cwd=str(tmp_path),
            dry_run=True,
        )
        assert receipt.status == "skipped"
        assert not (tmp_path / "x").exists()

    def test_default_registry(self, settings: Settings):
        registry = default_registry(settings, safe_mode=True)
        assert sorted(registry.list_adapters()) == ["filesystem", "packages", "proxy", "shell", "systemd"]
        assert registry.is_mocked("systemd")
        assert registry.is_mocked("proxy")
        assert not registry.is_mocked("shell")

    def test_adapter_status(self, settings: Settings):
        status = default_registry(settings).adapter_status()
        assert status["shell"]["available"] is True
        assert status["filesystem"]["type"] == "FilesystemAdapter"


# ── Mock ─────────────────────────────────────────────────────────────


class TestMockAdapter:
    def _context(self, action_id: str = "a", **params) -> ExecutionContext:
        return ExecutionContext(action=_action("mock", action_id, **params), params=params)

    def test_records_calls(self):
        mock = MockAdapter("systemd")
        mock.execute(self._context(operation="restart"))
        mock.execute(self._context(operation="stop"))
        assert mock.operations == ["restart", "stop"]
        assert mock.call_count == 2

    def test_fail_operation(self):
        mock = MockAdapter("proxy")
        mock.fail_operation("validate", "bad config")
        assert mock.execute(self._context(operation="reload")).ok
        receipt = mock.execute(self._context(operation="validate"))
        assert receipt.failed
        assert receipt.error == "bad config"

    def test_set_failure_by_action_id(self):
        mock = MockAdapter()
        mock.set_failure("a")
        assert mock.execute(self._context("a")).failed
        assert mock.execute(self._context("b")).ok

    def test_reset(self):
        mock = MockAdapter()
        mock.fail_operation("x")
        mock.execute(self._context(operation="x"))
        mock.reset()
        assert mock.call_count == 0
        assert mock.execute(self._context(operation="x")).ok


# ── Shell ────────────────────────────────────────────────────────────


class TestShellCommandAdapter:
    def _run(self, tmp_path: Path, command: str, **params):
        registry = AdapterRegistry()
        registry.register(ShellCommandAdapter(default_timeout=5))
        return registry.execute_action(_action("shell", command=command, **params), cwd=str(tmp_path))

    def test_output(self, tmp_path: Path):
        receipt = self._run(tmp_path, "echo hello")
        assert receipt.ok
        assert receipt.output == "hello"
        assert receipt.return_code == 0

    def test_failure_prefers_stderr(self, tmp_path: Path):
        receipt = self._run(tmp_path, "echo out; echo err >&2; exit 4")
        assert receipt.failed
        assert receipt.error == "err"
        assert receipt.metadata["stdout"] == "out"
        assert receipt.return_code == 4

    def test_env(self, tmp_path: Path):
        receipt = self._run(tmp_path, 'echo "$NAME"', env={"NAME": "procon"})
        assert receipt.output == "procon"

    def test_timeout(self, tmp_path: Path):
        receipt = self._run(tmp_path, "sleep 5", timeout=1)
        assert receipt.failed
        assert "timed out after 1s" in receipt.error

    def test_missing_cwd(self, tmp_path: Path):
        receipt = self._run(tmp_path, "true", cwd=str(tmp_path / "missing"))
        assert receipt.failed
        assert "Working directory does not exist" in receipt.error

    def test_nix_wrap(self):
        assert nix_wrap("make && ./run", ["gcc", "gnumake"]) == "nix-shell -p gcc gnumake --run 'make && ./run'"


# ── Filesystem ───────────────────────────────────────────────────────


class TestFilesystemAdapter:
    def _do(self, tmp_path: Path, operation: str, path: str, **params):
        registry = AdapterRegistry()
        registry.register(FilesystemAdapter())
        return registry.execute_action(
            _action("filesystem", operation=operation, path=path, **params),
            cwd=str(tmp_path),
        )

    def test_write_and_read(self, tmp_path: Path):
        assert self._do(tmp_path, "write", "nested/unit.service", content="[Unit]\n").ok
        receipt = self._do(tmp_path, "read", "nested/unit.service")
        assert receipt.output == "[Unit]\n"

    def test_exists(self, tmp_path: Path):
        assert self._do(tmp_path, "exists", "nope").metadata["exists"] is False

    def test_read_missing(self, tmp_path: Path):
        assert self._do(tmp_path, "read", "nope").failed

    def test_remove_is_idempotent(self, tmp_path: Path):
        (tmp_path / "f").touch()
        assert self._do(tmp_path, "remove", "f").metadata["existed"] is True
        assert self._do(tmp_path, "remove", "f").metadata["existed"] is False

    def test_mkdir_and_rmtree(self, tmp_path: Path):
        assert self._do(tmp_path, "mkdir", "a/b").ok
        assert (tmp_path / "a" / "b").is_dir()
        assert self._do(tmp_path, "rmtree", "a").ok
        assert not (tmp_path / "a").exists()

    def test_unknown_operation(self, tmp_path: Path):
        receipt = self._do(tmp_path, "chmod", "f")
        assert receipt.failed
        assert "Validation failed" in receipt.error

    def test_copy_tree_replaces_target(self, tmp_path: Path):
        (tmp_path / "src" / "lib").mkdir(parents=True)
        (tmp_path / "src" / "lib" / "main.py").write_text("print()\n")
        (tmp_path / "copy").mkdir()
        (tmp_path / "copy" / "stale.txt").touch()

        receipt = self._do(tmp_path, "copy_tree", "copy", source="src")
        assert receipt.ok
        assert (tmp_path / "copy" / "lib" / "main.py").read_text() == "print()\n"
        assert not (tmp_path / "copy" / "stale.txt").exists()
        assert [p.name for p in tmp_path.iterdir() if p.name.startswith(".")] == []

    def test_copy_tree_missing_source(self, tmp_path: Path):
        receipt = self._do(tmp_path, "copy_tree", "copy", source="nowhere")
        assert receipt.failed
        assert "Source directory not found" in receipt.error

    def test_unpack(self, tmp_path: Path):
        with zipfile.ZipFile(tmp_path / "app.zip", "w") as archive:
            archive.writestr("app/run.sh", "echo hi\n")
        receipt = self._do(tmp_path, "unpack", "out", archive="app.zip")
        assert receipt.ok
        assert (tmp_path / "out" / "app" / "run.sh").read_text() == "echo hi\n"

    def test_unpack_corrupt_archive(self, tmp_path: Path):
        (tmp_path / "app.zip").write_text("not a zip")
        (tmp_path / "out").mkdir()
        (tmp_path / "out" / "kept.txt").touch()
        receipt = self._do(tmp_path, "unpack", "out", archive="app.zip")
        assert receipt.failed
        assert "Cannot unpack" in receipt.error
        assert (tmp_path / "out" / "kept.txt").exists()


# ── Packages ─────────────────────────────────────────────────────────


class TestPackageAdapter:
    def _registry(self, settings: Settings) -> AdapterRegistry:
        registry = AdapterRegistry()
        registry.register(PackageAdapter(settings))
        return registry

    def test_installs_missing_only(self, settings: Settings, tmp_path: Path):
        (tmp_path / "present").touch()
        receipt = self._registry(settings).execute_action(
            _action("packages", packages=["present", "absent"]),
            cwd=str(tmp_path),
        )
        assert receipt.ok
        assert receipt.metadata["installed"] == ["absent"]
        assert receipt.metadata["already_installed"] == ["present"]
        assert (tmp_path / "absent").exists()

    def test_unknown_manager(self, settings: Settings, tmp_path: Path):
        receipt = self._registry(settings).execute_action(
            _action("packages", packages=["x"], manager="zypper"),
            cwd=str(tmp_path),
        )
        assert receipt.failed
        assert "Unknown package manager 'zypper'" in receipt.error

    def test_missing(self, settings: Settings, tmp_path: Path):
        (tmp_path / "a").touch()
        adapter = PackageAdapter(settings)
        assert adapter.missing(["a", "b"], "fake", str(tmp_path)) == ["b"]


# ── systemd / proxy ─────────────────────────────────────────────────


class TestSystemdAdapter:
    def test_user_command(self):
        assert SystemdAdapter(user=True).command("restart", "web.service") == [
            "systemctl", "--user", "restart", "web.service",
        ]

    def test_system_command(self):
        assert SystemdAdapter(user=False).command("daemon-reload") == ["systemctl", "daemon-reload"]

    @pytest.mark.parametrize("params", [{"operation": "explode", "unit": "x"}, {"operation": "restart"}])
    def test_invalid(self, params):
        context = ExecutionContext(action=_action("systemd", **params), params=params)
        valid, error = SystemdAdapter().validate(context)
        assert not valid
        assert error


class TestProxyAdapter:
    def test_invalid_operation(self):
        params = {"operation": "restart"}
        context = ExecutionContext(action=_action("proxy", **params), params=params)
        valid, _error = ProxyAdapter(ProxySettings()).validate(context)
        assert not valid

    def test_runs_configured_commands(self, tmp_path: Path):
        marker = tmp_path / "reloaded"
        settings = ProxySettings(reload_command=f"touch {marker}", validate_command="true")
        registry = AdapterRegistry()
        registry.register(ProxyAdapter(settings))

        assert registry.execute_action(_action("proxy", operation="validate")).ok
        assert registry.execute_action(_action("proxy", operation="reload")).ok
        assert marker.exists()

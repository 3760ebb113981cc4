"""
Tests for the step executor — ordering, stop-on-failure, deps, env.
"""

import threading
from pathlib import Path

import pytest

from procon.adapters.registry import default_registry
from procon.core.engine.steps import StepContext, StepExecutor
from procon.core.engine.templating import ResolvedStep
from procon.core.errors import StepFailure
from procon.core.models.settings import Settings


def _run(cwd: Path, *commands: str, origin: str = "build[0]", deps: tuple[str, ...] = ()) -> ResolvedStep:
    return ResolvedStep(kind="run", origin=origin, cwd=str(cwd), commands=commands, deps=deps)


def _context(tmp_path: Path, **kwargs) -> StepContext:
    return StepContext(project="web", phase="build", project_dir=tmp_path, **kwargs)


@pytest.fixture
def executor(settings: Settings) -> StepExecutor:
    return StepExecutor(default_registry(settings), settings)


class TestStepExecutor:
    def test_runs_in_order(self, executor: StepExecutor, tmp_path: Path):
        steps = [
            _run(tmp_path, "echo one >> log.txt", origin="build[0]"),
            _run(tmp_path, "echo two >> log.txt", origin="build[1]"),
        ]
        result = executor.run(steps, _context(tmp_path))
        assert result.ok
        assert result.steps_run == 2
        assert (tmp_path / "log.txt").read_text() == "one\ntwo\n"

    def test_stops_at_first_failure(self, executor: StepExecutor, tmp_path: Path):
        steps = [
            _run(tmp_path, "echo broken >&2; exit 3", origin="build[0]"),
            _run(tmp_path, "touch never", origin="build[1]"),
        ]
        result = executor.run(steps, _context(tmp_path))
        assert not result.ok
        assert result.failed_step == "build[0]"
        assert result.exit_code == 3
        assert result.error == "broken"
        assert not (tmp_path / "never").exists()

        with pytest.raises(StepFailure) as excinfo:
            result.raise_for_failure()
        assert excinfo.value.exit_code == 3
        assert excinfo.value.project == "web"
        assert "web:build step build[0] failed (exit 3)" in str(excinfo.value)

    def test_commands_of_one_step_short_circuit(self, executor: StepExecutor, tmp_path: Path):
        result = executor.run([_run(tmp_path, "false", "touch after")], _context(tmp_path))
        assert not result.ok
        assert not (tmp_path / "after").exists()

    def test_environment(self, executor: StepExecutor, tmp_path: Path):
        step = _run(tmp_path, 'echo "$PROCON_PROJECT $PROCON_PHASE $GREETING" > env.txt')
        result = executor.run([step], _context(tmp_path, env={"GREETING": "hi"}))
        assert result.ok
        assert (tmp_path / "env.txt").read_text().strip() == "web build hi"

    def test_step_cwd(self, executor: StepExecutor, tmp_path: Path):
        sub = tmp_path / "sub"
        sub.mkdir()
        executor.run([_run(sub, "touch here")], _context(tmp_path))
        assert (sub / "here").exists()

    def test_project_deps_installed_once_per_phase(self, executor: StepExecutor, tmp_path: Path):
        steps = [_run(tmp_path, "true", origin="build[0]"), _run(tmp_path, "true", origin="build[1]")]
        result = executor.run(steps, _context(tmp_path, deps=["libfoo"]))
        assert result.ok
        assert [r.adapter for r in result.receipts] == ["packages", "shell", "shell"]
        assert (tmp_path / "libfoo").exists()

    def test_deps_are_idempotent(self, executor: StepExecutor, tmp_path: Path):
        steps = [_run(tmp_path, "true", deps=("libbar",))]
        first = executor.run(steps, _context(tmp_path))
        second = executor.run(steps, _context(tmp_path))
        assert first.receipts[0].metadata["installed"] == ["libbar"]
        assert second.receipts[0].metadata["installed"] == []
        assert second.receipts[0].metadata["already_installed"] == ["libbar"]

    def test_failed_install_fails_phase(self, tmp_path: Path):
        settings = Settings(
            package_manager="broken",
            package_managers={"broken": {"check": "false", "install": "exit 7"}},
        )
        executor = StepExecutor(default_registry(settings), settings)
        step = ResolvedStep(kind="install", origin="setup[0]", cwd=str(tmp_path), packages=("pkg",))
        result = executor.run([step], _context(tmp_path))
        assert result.failed_step == "setup[0]"
        assert result.exit_code == 7

    def test_dry_run(self, executor: StepExecutor, tmp_path: Path):
        result = executor.run([_run(tmp_path, "touch created")], _context(tmp_path, dry_run=True))
        assert result.ok
        assert result.receipts[0].status == "skipped"
        assert not (tmp_path / "created").exists()

    def test_cancelled_before_first_step(self, executor: StepExecutor, tmp_path: Path):
        cancel = threading.Event()
        cancel.set()
        result = executor.run([_run(tmp_path, "touch created")], _context(tmp_path, cancel=cancel))
        assert result.cancelled
        assert result.receipts == []
        assert not (tmp_path / "created").exists()

    def test_empty_phase(self, executor: StepExecutor, tmp_path: Path):
        result = executor.run([], _context(tmp_path, deps=["libfoo"]))
        assert result.ok
        assert result.receipts == []
        assert not (tmp_path / "libfoo").exists()


class TestBuildActions:
    def test_action_ids(self, executor: StepExecutor, tmp_path: Path):
        actions = executor.build_actions([_run(tmp_path, "make")], _context(tmp_path, operation_id="op-1"))
        assert actions[0].id == "op-1:web:build:build[0]"
        assert actions[0].params["timeout"] == 1800

    def test_nix_wraps_instead_of_installing(self, tmp_path: Path):
        settings = Settings(package_manager="nix")
        executor = StepExecutor(default_registry(settings), settings)
        actions = executor.build_actions(
            [_run(tmp_path, "make", deps=("gcc",))],
            _context(tmp_path, deps=["gnumake"]),
        )
        assert [a.adapter for a in actions] == ["shell"]
        assert actions[0].params["nix"] is True
        assert actions[0].params["packages"] == ["gnumake", "gcc"]

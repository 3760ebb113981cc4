"""
Tests for the supervisor — restart backoff, watchers, run-proxy.
"""

import functools
import threading
import time
from pathlib import Path

import pytest

from procon.core.errors import SupervisorFailure
from procon.core.models.action import Receipt
from procon.core.models.settings import Settings, SupervisorSettings
from procon.core.models.state import DaemonRef
from procon.core.reliability.backoff import RestartTracker
from procon.core.services.daemons import DaemonManager
from procon.core.services.supervisor import (
    DaemonSpec,
    DaemonState,
    ProcessRunner,
    Runner,
    Supervisor,
    UnitRunner,
    should_restart,
)
from procon.core.use_cases.run_proxy import run_proxy, start_command

FAST = SupervisorSettings(
    max_restarts=2,
    backoff_seconds=0.01,
    max_backoff_seconds=0.05,
    healthy_after_seconds=60,
    poll_interval_seconds=0.05,
    stop_timeout_seconds=2,
)


def _spec(name: str, command: str, cwd: Path, restart: str = "on-failure") -> DaemonSpec:
    return DaemonSpec(
        name=name,
        identity=command,
        restart=restart,
        make_runner=functools.partial(ProcessRunner, name, command, str(cwd), {}, 2.0),
    )


def _supervise(*specs: DaemonSpec, until_idle: bool = True) -> Supervisor:
    table = {s.name: s for s in specs}
    return Supervisor(functools.partial(dict, table), FAST, until_idle=until_idle)


class ScriptedRunner(Runner):
    """Runs until stopped, or exits 1 after ``lifetime`` seconds.

    With ``fail_restarts`` every start after the first raises, like a
    project whose directory vanished while it was running.
    """

    def __init__(self, name: str, lifetime: float | None = None, fail_restarts: bool = False):
        super().__init__(name)
        self.lifetime = lifetime
        self.fail_restarts = fail_restarts
        self.starts = 0
        self.started = threading.Event()
        self.stopped = threading.Event()
        self._deadline: float | None = None

    def start(self) -> None:
        self.starts += 1
        if self.fail_restarts and self.starts > 1:
            raise OSError("No such file or directory")
        if self.lifetime is not None:
            self._deadline = time.monotonic() + self.lifetime
        self.started.set()

    def poll(self) -> int | None:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return 1
        return None

    def stop(self) -> None:
        self.stopped.set()


def _run_in_background(supervisor: Supervisor) -> tuple[threading.Thread, list]:
    reports: list = []
    thread = threading.Thread(target=lambda: reports.append(supervisor.run()))
    thread.start()
    return thread, reports


def _finish(supervisor: Supervisor, thread: threading.Thread, seconds: float = 10.0) -> None:
    thread.join(seconds)
    if thread.is_alive():
        supervisor.stop()
        thread.join()
        pytest.fail(f"supervisor still running after {seconds}s")


class TestRestartTracker:
    def test_exponential_delay_capped(self):
        tracker = RestartTracker(name="web", max_restarts=10, base_delay=1.0, max_delay=5.0)
        assert [tracker.next_delay() for _ in range(4)] == [1.0, 2.0, 4.0, 5.0]
        assert tracker.total_restarts == 4

    def test_exhausted(self):
        tracker = RestartTracker(name="web", max_restarts=2)
        assert not tracker.exhausted
        tracker.next_delay()
        tracker.next_delay()
        assert tracker.exhausted

    def test_healthy_run_resets_budget(self):
        tracker = RestartTracker(name="web", max_restarts=2, healthy_after=0.0)
        tracker.next_delay()
        tracker.next_delay()
        tracker.mark_started()
        tracker.record_exit(1)
        assert tracker.restarts == 0
        assert tracker.total_restarts == 2
        assert tracker.last_exit_code == 1

    def test_short_run_keeps_count(self):
        tracker = RestartTracker(name="web", healthy_after=60.0)
        tracker.next_delay()
        tracker.mark_started()
        tracker.record_exit(1)
        assert tracker.restarts == 1

    def test_failed_launch_is_not_a_healthy_run(self):
        tracker = RestartTracker(name="web", max_restarts=3, healthy_after=0.0)
        tracker.mark_started()
        tracker.record_exit(1)
        tracker.next_delay()
        # the relaunch failed: no mark_started before the next exit
        tracker.record_exit(127)
        assert tracker.restarts == 1
        assert tracker.uptime() == 0.0

    def test_from_settings(self):
        tracker = RestartTracker.from_settings("web", FAST)
        assert tracker.max_restarts == 2
        assert tracker.base_delay == 0.01


class TestRestartPolicy:
    @pytest.mark.parametrize(
        "policy,code,expected",
        [
            ("always", 0, True),
            ("always", 1, True),
            ("on-failure", 0, False),
            ("on-failure", 3, True),
            ("never", 3, False),
        ],
    )
    def test_should_restart(self, policy, code, expected):
        assert should_restart(policy, code) is expected


class TestSupervisor:
    def test_crash_loop_ends_unhealthy(self, tmp_path: Path):
        report = _supervise(_spec("crash", "exit 3", tmp_path)).run()

        status = report.daemons["crash"]
        assert status.state == DaemonState.UNHEALTHY
        assert status.restarts == 2
        assert status.last_exit_code == 3
        assert report.unhealthy == ["crash"]
        with pytest.raises(SupervisorFailure, match="crash"):
            report.raise_for_unhealthy()

    def test_clean_exit_is_not_restarted(self, tmp_path: Path):
        report = _supervise(_spec("oneshot", "echo ran >> runs", tmp_path)).run()

        assert report.daemons["oneshot"].state == DaemonState.EXITED
        assert report.unhealthy == []
        assert (tmp_path / "runs").read_text() == "ran\n"

    def test_never_restart_failure_is_unhealthy(self, tmp_path: Path):
        report = _supervise(_spec("once", "echo ran >> runs; exit 1", tmp_path, restart="never")).run()

        assert report.unhealthy == ["once"]
        assert (tmp_path / "runs").read_text() == "ran\n"

    def test_always_restarts_clean_exits(self, tmp_path: Path):
        report = _supervise(_spec("loop", "echo ran >> runs", tmp_path, restart="always")).run()

        assert report.daemons["loop"].state == DaemonState.UNHEALTHY
        assert (tmp_path / "runs").read_text() == "ran\n" * 3

    def test_one_daemon_does_not_affect_another(self, tmp_path: Path):
        report = _supervise(
            _spec("crash", "exit 1", tmp_path),
            _spec("fine", "true", tmp_path),
        ).run()
        assert report.unhealthy == ["crash"]
        assert report.daemons["fine"].state == DaemonState.EXITED

    def test_stop_from_another_thread(self, tmp_path: Path):
        supervisor = _supervise(_spec("server", "sleep 30", tmp_path), until_idle=False)
        timer = threading.Timer(0.5, supervisor.stop)
        timer.start()

        started = time.monotonic()
        report = supervisor.run()
        timer.join()

        assert report.interrupted
        assert report.daemons["server"].state == DaemonState.STOPPED
        assert time.monotonic() - started < 10

    def test_report_to_dict(self, tmp_path: Path):
        data = _supervise(_spec("crash", "exit 3", tmp_path)).run().to_dict()
        assert data["unhealthy"] == ["crash"]
        assert data["daemons"]["crash"]["state"] == "unhealthy"

    def test_failing_relaunches_after_healthy_run_use_up_budget(self):
        settings = FAST.model_copy(update={"healthy_after_seconds": 0.05})
        runner = ScriptedRunner("web", lifetime=0.2, fail_restarts=True)
        spec = DaemonSpec(name="web", identity="v1", restart="on-failure", make_runner=lambda: runner)
        supervisor = Supervisor(functools.partial(dict, {"web": spec}), settings, until_idle=True)

        thread, reports = _run_in_background(supervisor)
        _finish(supervisor, thread)

        status = reports[0].daemons["web"]
        assert status.state == DaemonState.UNHEALTHY
        assert status.restarts == 2
        assert status.last_exit_code == 127
        assert runner.starts == 3


class TestSupervisorSync:
    """The daemon list is re-read while supervising."""

    def test_changed_daemon_gets_fresh_watcher(self):
        first = ScriptedRunner("web")
        second = ScriptedRunner("web")
        table = {"web": DaemonSpec(name="web", identity="v1", restart="on-failure", make_runner=lambda: first)}
        supervisor = Supervisor(functools.partial(dict, table), FAST)

        thread, reports = _run_in_background(supervisor)
        try:
            assert first.started.wait(5)
            table["web"] = DaemonSpec(name="web", identity="v2", restart="on-failure", make_runner=lambda: second)
            assert second.started.wait(5)
            assert first.stopped.is_set()
            assert not second.stopped.is_set()
        finally:
            supervisor.stop()
            _finish(supervisor, thread)

        assert second.stopped.is_set()
        assert (first.starts, second.starts) == (1, 1)
        assert reports[0].daemons["web"].state == DaemonState.STOPPED

    def test_unchanged_daemon_keeps_its_watcher(self):
        runner = ScriptedRunner("web")
        made: list[ScriptedRunner] = []

        def make_runner() -> ScriptedRunner:
            made.append(runner)
            return runner

        table = {"web": DaemonSpec(name="web", identity="v1", restart="on-failure", make_runner=make_runner)}
        supervisor = Supervisor(functools.partial(dict, table), FAST)

        thread, _reports = _run_in_background(supervisor)
        try:
            assert runner.started.wait(5)
            time.sleep(0.3)
        finally:
            supervisor.stop()
            _finish(supervisor, thread)

        assert len(made) == 1
        assert runner.starts == 1

    def test_removed_daemon_is_retired(self):
        runner = ScriptedRunner("web")
        table = {"web": DaemonSpec(name="web", identity="v1", restart="on-failure", make_runner=lambda: runner)}
        supervisor = Supervisor(functools.partial(dict, table), FAST)

        thread, reports = _run_in_background(supervisor)
        try:
            assert runner.started.wait(5)
            del table["web"]
            assert runner.stopped.wait(5)
            deadline = time.monotonic() + 5
            while "web" in supervisor.status and time.monotonic() < deadline:
                time.sleep(0.02)
            assert "web" not in supervisor.status
        finally:
            supervisor.stop()
            _finish(supervisor, thread)

        assert reports[0].daemons == {}
        assert runner.starts == 1


class TestRunners:
    def test_process_runner(self, tmp_path: Path):
        runner = ProcessRunner("sleeper", "sleep 30", str(tmp_path), stop_timeout=2.0)
        runner.start()
        try:
            assert runner.pid is not None
            assert runner.poll() is None
        finally:
            runner.stop()
        assert runner.poll() is not None

    def test_process_runner_env(self, tmp_path: Path):
        runner = ProcessRunner("env", 'echo "$GREETING" > out', str(tmp_path), {"GREETING": "hi"})
        runner.start()
        while runner.poll() is None:
            time.sleep(0.01)
        assert (tmp_path / "out").read_text() == "hi\n"

    def test_unit_runner(self, host, settings: Settings, tmp_path: Path):
        daemons = DaemonManager(host.registry(settings), settings, tmp_path, str(tmp_path / "procon.yml"))
        ref = DaemonRef(unit_name="procon-proj-web.service", unit_path="/x", content_hash="h")
        runner = UnitRunner("web", daemons, ref)

        runner.start()
        assert host.systemd.operations == ["restart"]

        def state(value: str) -> None:
            host.systemd.set_response(
                "web:daemon:is-active",
                Receipt.success(adapter="systemd", action_id="x", metadata={"active_state": value}),
            )

        state("active")
        assert runner.poll() is None
        state("inactive")
        assert runner.poll() == 0
        state("failed")
        assert runner.poll() == 1


class TestRunProxy:
    def test_start_command(self, write_config, tmp_path: Path):
        from procon.core.config.loader import load_config

        path = write_config({"web": {"env": {"PORT": 8080}, "start": ["./serve --port $PORT"]}})
        config = load_config(path)
        command, cwd, env = start_command(config, config.projects["web"])

        assert command == f"cd {tmp_path} && ./serve --port $PORT"
        assert cwd == str(tmp_path)
        assert env["PORT"] == "8080"
        assert env["PROCON_PHASE"] == "start"

    def test_project_without_start(self, write_config):
        path = write_config({"cli": {"build": "make"}})
        result = run_proxy(["cli"], config_path=path)
        assert "has no start command" in result.error

    def test_supervises_until_exit(self, write_config, tmp_path: Path):
        path = write_config({"job": {"start": "echo done >> ran"}})
        result = run_proxy(["job"], config_path=path)

        assert result.ok
        assert result.mode == "process"
        assert result.report.daemons["job"].state == DaemonState.EXITED
        assert (tmp_path / "ran").read_text() == "done\n"

    def test_unhealthy_daemon_fails(self, write_config):
        path = write_config({"web": {"start": "exit 4"}})
        result = run_proxy(["web"], config_path=path)

        assert not result.ok
        assert "Unhealthy daemons: web" in result.error
        assert result.report.daemons["web"].last_exit_code == 4

"""
Supervisor — keep daemons running (the ``run-proxy`` command).

Two kinds of thing can be supervised:

    ProcessRunner   the project's start command as a child process;
                    this is what a generated unit's ExecStart runs
    UnitRunner      an installed unit, through systemctl is-active /
                    restart; used when run-proxy is given no projects

Each daemon gets a watcher thread. Watchers never touch shared state:
they post DaemonEvents onto a queue and the central loop folds those
into the status registry and the log.

Per daemon the restart policy decides whether an exit is restarted:
    never        any exit ends watching
    on-failure   restart on non-zero exit only
    always       restart on any exit
Restarts back off exponentially (see reliability.backoff). A daemon
that runs out of restarts, or exits non-zero and is not restarted,
ends UNHEALTHY; the run as a whole then fails with SupervisorFailure.

The daemon list comes from a source callable that is polled every
``poll_interval_seconds``: a daemon that disappears has its watcher
stopped; a daemon whose identity changed gets a fresh watcher.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from procon.core.errors import ProconError, SupervisorFailure
from procon.core.models.settings import SupervisorSettings
from procon.core.models.state import DaemonRef
from procon.core.observability.logging_config import project_context
from procon.core.reliability.backoff import RestartTracker
from procon.core.services.daemons import DaemonManager

logger = logging.getLogger(__name__)

# Exit code reported when a runner cannot even be started.
LAUNCH_FAILED = 127


class DaemonState(StrEnum):
    """Supervision state of one daemon."""

    STARTING = "starting"
    RUNNING = "running"
    BACKOFF = "backoff"
    EXITED = "exited"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"


@dataclass
class DaemonEvent:
    """Posted by a watcher whenever its daemon changes state."""

    name: str
    state: DaemonState
    detail: str = ""
    exit_code: int | None = None
    restarts: int = 0
    at: float = field(default_factory=time.time)


@dataclass
class DaemonStatus:
    """Latest known state of one daemon, as folded from events."""

    name: str
    state: DaemonState = DaemonState.STARTING
    restarts: int = 0
    last_exit_code: int | None = None
    detail: str = ""
    since: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "restarts": self.restarts,
            "last_exit_code": self.last_exit_code,
            "detail": self.detail,
            "since": self.since,
        }


# ═══════════════════════════════════════════════════════════════════
#  Runners
# ═══════════════════════════════════════════════════════════════════


class Runner(ABC):
    """Something that can be started, polled and stopped."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def start(self) -> None:
        """Start (or restart) the daemon."""

    @abstractmethod
    def poll(self) -> int | None:
        """None while running, otherwise the exit code."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the daemon if this runner owns it."""


class ProcessRunner(Runner):
    """A child process running the project's start command."""

    def __init__(
        self,
        name: str,
        command: str,
        cwd: str,
        env: dict[str, str] | None = None,
        stop_timeout: float = 10.0,
    ):
        super().__init__(name)
        self.command = command
        self.cwd = cwd
        self.env = env or {}
        self.stop_timeout = stop_timeout
        self._process: subprocess.Popen | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def start(self) -> None:
        self._process = subprocess.Popen(
            self.command,
            shell=True,
            cwd=self.cwd,
            env={**os.environ, **self.env},
            start_new_session=True,
        )
        logger.info("Started '%s' (pid %d)", self.name, self._process.pid)

    def poll(self) -> int | None:
        if self._process is None:
            return LAUNCH_FAILED
        return self._process.poll()

    def _signal_group(self, signum: int) -> None:
        if self._process is None:
            return
        try:
            os.killpg(self._process.pid, signum)
        except ProcessLookupError:
            pass

    def stop(self) -> None:
        if self._process is None or self._process.poll() is not None:
            return
        logger.info("Stopping '%s' (pid %d)", self.name, self._process.pid)
        self._signal_group(signal.SIGTERM)
        try:
            self._process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("'%s' ignored SIGTERM for %.0fs — killing", self.name, self.stop_timeout)
            self._signal_group(signal.SIGKILL)
            self._process.wait()


class UnitRunner(Runner):
    """An installed unit, observed and restarted through systemctl."""

    _RUNNING = {"active", "activating", "reloading", "deactivating"}

    def __init__(self, name: str, daemons: DaemonManager, ref: DaemonRef):
        super().__init__(name)
        self._daemons = daemons
        self._ref = ref

    def start(self) -> None:
        self._daemons.restart(self.name, self._ref)

    def poll(self) -> int | None:
        try:
            state = self._daemons.is_active(self.name, self._ref)
        except ProconError as e:
            logger.warning("Cannot query %s: %s", self._ref.unit_name, e)
            return None
        if state in self._RUNNING:
            return None
        return 0 if state == "inactive" else 1

    def stop(self) -> None:
        # The unit belongs to systemd; leaving run-proxy does not stop it.
        return None


# ═══════════════════════════════════════════════════════════════════
#  Watcher
# ═══════════════════════════════════════════════════════════════════


def should_restart(policy: str, exit_code: int | None) -> bool:
    if policy == "always":
        return True
    if policy == "on-failure":
        return exit_code != 0
    return False


class DaemonWatcher(threading.Thread):
    """Runs one daemon and applies its restart policy."""

    def __init__(
        self,
        runner: Runner,
        restart: str,
        tracker: RestartTracker,
        events: queue.Queue,
        poll_interval: float = 1.0,
    ):
        super().__init__(name=f"watch-{runner.name}", daemon=True)
        self.runner = runner
        self.restart = restart
        self.tracker = tracker
        self._events = events
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def _post(self, state: DaemonState, detail: str = "", exit_code: int | None = None) -> None:
        self._events.put(DaemonEvent(
            name=self.runner.name,
            state=state,
            detail=detail,
            exit_code=exit_code,
            restarts=self.tracker.total_restarts,
        ))

    def _launch(self) -> int | None:
        self._post(DaemonState.STARTING)
        try:
            self.runner.start()
        except (OSError, ProconError) as e:
            self._post(DaemonState.EXITED, f"cannot start: {e}", LAUNCH_FAILED)
            return LAUNCH_FAILED
        self.tracker.mark_started()
        self._post(DaemonState.RUNNING)
        return None

    def run(self) -> None:
        with project_context(self.runner.name):
            self._watch()

    def _watch(self) -> None:
        code = self._launch()
        while True:
            if code is None:
                if self._stop_event.wait(self._poll_interval):
                    break
                code = self.runner.poll()
                continue

            self.tracker.record_exit(code)
            if code != LAUNCH_FAILED:
                self._post(DaemonState.EXITED, f"exited with code {code}", code)

            if not should_restart(self.restart, code):
                if code == 0:
                    return
                self._post(DaemonState.UNHEALTHY, f"exited with code {code}; restart={self.restart}", code)
                return
            if self.tracker.exhausted:
                self._post(
                    DaemonState.UNHEALTHY,
                    f"gave up after {self.tracker.restarts} restarts",
                    code,
                )
                return

            delay = self.tracker.next_delay()
            self._post(DaemonState.BACKOFF, f"restarting in {delay:.1f}s", code)
            if self._stop_event.wait(delay):
                return
            code = self._launch()

        self.runner.stop()
        self._post(DaemonState.STOPPED)


# ═══════════════════════════════════════════════════════════════════
#  Supervisor
# ═══════════════════════════════════════════════════════════════════


@dataclass
class DaemonSpec:
    """One daemon as listed by a supervisor source."""

    name: str
    identity: str
    restart: str
    make_runner: Callable[[], Runner]


@dataclass
class SupervisorReport:
    """Final status of every daemon seen during the run."""

    daemons: dict[str, DaemonStatus] = field(default_factory=dict)
    interrupted: bool = False

    @property
    def unhealthy(self) -> list[str]:
        return sorted(n for n, s in self.daemons.items() if s.state == DaemonState.UNHEALTHY)

    def raise_for_unhealthy(self) -> None:
        if self.unhealthy:
            raise SupervisorFailure(self.unhealthy)

    def to_dict(self) -> dict[str, Any]:
        return {
            "interrupted": self.interrupted,
            "unhealthy": self.unhealthy,
            "daemons": {n: s.to_dict() for n, s in sorted(self.daemons.items())},
        }


class Supervisor:
    """Central loop: sync watchers with the source, fold their events."""

    def __init__(
        self,
        source: Callable[[], dict[str, DaemonSpec]],
        settings: SupervisorSettings,
        until_idle: bool = False,
    ):
        self._source = source
        self._settings = settings
        self._until_idle = until_idle
        self._events: queue.Queue[DaemonEvent] = queue.Queue()
        self._watchers: dict[str, DaemonWatcher] = {}
        self._identities: dict[str, str] = {}
        self._status: dict[str, DaemonStatus] = {}
        self._stop = threading.Event()

    def stop(self) -> None:
        """Ask the loop to wind down (safe from any thread or a signal handler)."""
        self._stop.set()

    @property
    def status(self) -> dict[str, DaemonStatus]:
        return dict(self._status)

    # ── Watchers ────────────────────────────────────────────────

    def _spawn(self, spec: DaemonSpec) -> None:
        tracker = RestartTracker.from_settings(spec.name, self._settings)
        watcher = DaemonWatcher(
            spec.make_runner(),
            spec.restart,
            tracker,
            self._events,
            poll_interval=self._settings.poll_interval_seconds,
        )
        self._watchers[spec.name] = watcher
        self._identities[spec.name] = spec.identity
        self._status[spec.name] = DaemonStatus(name=spec.name)
        watcher.start()

    def _retire(self, name: str) -> None:
        watcher = self._watchers.pop(name, None)
        self._identities.pop(name, None)
        if watcher is None:
            return
        watcher.stop()
        watcher.join(timeout=self._settings.stop_timeout_seconds + self._settings.poll_interval_seconds + 1)

    def _sync(self) -> None:
        try:
            specs = self._source()
        except ProconError as e:
            logger.warning("Cannot refresh daemon list: %s", e)
            return

        for name in sorted(set(self._identities) - set(specs)):
            logger.info("Daemon '%s' is no longer registered — stopping its watcher", name)
            self._retire(name)
            self._status.pop(name, None)

        for name, spec in sorted(specs.items()):
            known = self._identities.get(name)
            if known == spec.identity:
                continue
            if known is not None:
                logger.info("Daemon '%s' changed — replacing its watcher", name)
                self._retire(name)
            self._spawn(spec)

    # ── Events ──────────────────────────────────────────────────

    def _fold(self, event: DaemonEvent) -> None:
        status = self._status.get(event.name)
        if status is None:
            # Late event from a watcher whose daemon was unregistered.
            return
        status.state = event.state
        status.restarts = event.restarts
        status.detail = event.detail
        status.since = event.at
        if event.exit_code is not None:
            status.last_exit_code = event.exit_code

        if event.state == DaemonState.UNHEALTHY:
            logger.error("✗ %s unhealthy: %s", event.name, event.detail)
        elif event.state in (DaemonState.EXITED, DaemonState.BACKOFF):
            logger.warning("%s %s: %s", event.name, event.state.value, event.detail)
        else:
            logger.info("%s → %s", event.name, event.state.value)

    def _drain(self, timeout: float) -> None:
        try:
            self._fold(self._events.get(timeout=timeout))
        except queue.Empty:
            return
        while True:
            try:
                self._fold(self._events.get_nowait())
            except queue.Empty:
                return

    def _idle(self) -> bool:
        return not any(w.is_alive() for w in self._watchers.values())

    # ── Main loop ───────────────────────────────────────────────

    def _install_signals(self) -> dict[int, Any]:
        if threading.current_thread() is not threading.main_thread():
            return {}

        def handle_signal(signum: int, frame: object) -> None:
            logger.info("Supervisor received signal %d — shutting down", signum)
            self.stop()

        return {
            sig: signal.signal(sig, handle_signal)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }

    def run(self) -> SupervisorReport:
        """Supervise until stopped (or, with ``until_idle``, until every watcher ended)."""
        previous = self._install_signals()
        report = SupervisorReport()
        try:
            while not self._stop.is_set():
                self._sync()
                self._drain(self._settings.poll_interval_seconds)
                if self._until_idle and self._idle():
                    break
            report.interrupted = self._stop.is_set()
        finally:
            for name in list(self._watchers):
                self._retire(name)
            self._drain(0)
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        report.daemons = self.status
        logger.info(
            "Supervisor finished: %d daemon(s), %d unhealthy",
            len(report.daemons),
            len(report.unhealthy),
        )
        return report

"""
Phase state machine — drive one project through its lifecycle.

States:
    PENDING   → nothing run yet
    TEARDOWN  → tearing down stale artifacts / removed project
    SETUP, BUILD, START
    STOP      → stopping a removed project
    APPLIED   → added/changed project fully applied (terminal)
    REMOVED   → removed project fully torn down (terminal)
    FAILED    → a phase failed; remaining phases skipped (terminal)
    CANCELLED → interrupted between steps (terminal)

Transitions:
    Added:    PENDING → SETUP → BUILD → START → APPLIED
    Changed:  PENDING → [TEARDOWN →] SETUP → BUILD → START → APPLIED
    Removed:  PENDING → STOP → TEARDOWN → REMOVED
    any non-terminal state → FAILED | CANCELLED

Phases that act on what was applied before (stop, teardown) use the
declaration stored in the snapshot entry, not the current config: a
removed project is no longer in the config at all, and a changed
project must be torn down the way it was set up.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from procon.adapters.registry import AdapterRegistry
from procon.core.engine.diff import Change, ChangeKind, artifact_fingerprint, fingerprint
from procon.core.engine.steps import PhaseResult, StepContext, StepExecutor
from procon.core.engine.templating import ResolvedStep, resolve_phase
from procon.core.errors import ConfigError, ProconError, ReconcileFailure, StepFailure
from procon.core.models.action import Action
from procon.core.models.config import Config
from procon.core.models.project import Project, Task
from procon.core.models.state import DaemonRef, ProxyRef, SnapshotEntry
from procon.core.observability.logging_config import project_context
from procon.core.services.daemons import DaemonManager
from procon.core.services.proxies import ProxyManager

logger = logging.getLogger(__name__)


class ProjectState(StrEnum):
    """Where a project is in its apply."""

    PENDING = "pending"
    TEARDOWN = "teardown"
    SETUP = "setup"
    BUILD = "build"
    START = "start"
    STOP = "stop"
    APPLIED = "applied"
    REMOVED = "removed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {
    ProjectState.APPLIED,
    ProjectState.REMOVED,
    ProjectState.FAILED,
    ProjectState.CANCELLED,
}

_ABORT = {ProjectState.FAILED, ProjectState.CANCELLED}

TRANSITIONS: dict[ProjectState, set[ProjectState]] = {
    ProjectState.PENDING: {ProjectState.TEARDOWN, ProjectState.SETUP, ProjectState.STOP} | _ABORT,
    ProjectState.TEARDOWN: {ProjectState.SETUP, ProjectState.REMOVED} | _ABORT,
    ProjectState.SETUP: {ProjectState.BUILD} | _ABORT,
    ProjectState.BUILD: {ProjectState.START} | _ABORT,
    ProjectState.START: {ProjectState.APPLIED} | _ABORT,
    ProjectState.STOP: {ProjectState.TEARDOWN} | _ABORT,
    ProjectState.APPLIED: set(),
    ProjectState.REMOVED: set(),
    ProjectState.FAILED: set(),
    ProjectState.CANCELLED: set(),
}


class PhaseCancelled(Exception):
    """The cancel event was set before a phase could finish."""


@dataclass
class ProjectOutcome:
    """What happened to one project during an apply."""

    name: str
    change: Change
    state: ProjectState = ProjectState.PENDING
    phases: list[PhaseResult] = field(default_factory=list)
    history: list[str] = field(default_factory=lambda: [ProjectState.PENDING.value])
    failed_phase: str | None = None
    error: str | None = None
    entry: SnapshotEntry | None = None

    @property
    def succeeded(self) -> bool:
        return self.state in (ProjectState.APPLIED, ProjectState.REMOVED)

    @property
    def failed(self) -> bool:
        return self.state == ProjectState.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "change": self.change.kind.value,
            "state": self.state.value,
            "history": self.history,
            "failed_phase": self.failed_phase,
            "error": self.error,
            "phases": [p.to_dict() for p in self.phases],
        }


@dataclass
class EngineRuntime:
    """Collaborators shared by every project in one operation."""

    config: Config
    registry: AdapterRegistry
    operation_id: str = ""
    dry_run: bool = False
    cancel: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        settings = self.config.settings
        self.steps = StepExecutor(self.registry, settings)
        self.daemons = DaemonManager(
            self.registry,
            settings,
            artifacts_dir=self.config.state_dir / "artifacts",
            config_path=self.config.source or str(self.config.root_dir / "procon.yml"),
            operation_id=self.operation_id,
            dry_run=self.dry_run,
        )
        self.proxies = ProxyManager(
            self.registry,
            settings.proxy,
            operation_id=self.operation_id,
            dry_run=self.dry_run,
        )


class PhaseRunner:
    """Runs individual phases; shared by apply and the ad hoc ``run``."""

    def __init__(self, runtime: EngineRuntime):
        self.runtime = runtime

    def run_steps(
        self,
        project: Project,
        phase: str,
        steps: list[ResolvedStep],
        project_dir: Path,
    ) -> PhaseResult:
        """Execute resolved steps; raise StepFailure on the first failure."""
        context = StepContext(
            project=project.name,
            phase=phase,
            project_dir=project_dir,
            operation_id=self.runtime.operation_id,
            env=dict(project.env),
            deps=list(project.deps),
            dry_run=self.runtime.dry_run,
            cancel=self.runtime.cancel,
        )
        result = self.runtime.steps.run(steps, context)
        if result.cancelled:
            raise PhaseCancelled(project.name)
        return result

    def fetch_source(self, project: Project) -> None:
        """Copy or unpack the project's ``source`` into its artifact directory."""
        source = project.source
        config = self.runtime.config
        origin = config.source_origin(project)
        if source is None or origin is None:
            return
        target = str(config.source_dir(project))
        if source.kind == "path":
            params = {"operation": "copy_tree", "path": target, "source": str(origin)}
        else:
            params = {"operation": "unpack", "path": target, "archive": str(origin)}
        prefix = f"{self.runtime.operation_id}:" if self.runtime.operation_id else ""
        action = Action(
            id=f"{prefix}{project.name}:source:{source.kind}",
            name=f"source:{source.kind}",
            adapter="filesystem",
            project=project.name,
            params=params,
        )
        receipt = self.runtime.registry.execute_action(action, dry_run=self.runtime.dry_run)
        if receipt.failed:
            raise ReconcileFailure(project.name, "source", receipt.error or "failed")
        if not self.runtime.dry_run:
            logger.info("Fetched source of '%s' from %s", project.name, origin)

    def start_artifacts(
        self,
        project: Project,
        project_dir: Path,
    ) -> tuple[DaemonRef | None, ProxyRef | None]:
        """Reconcile and (re)start the unit, then the proxy entry."""
        daemon_ref = None
        proxy_ref = None
        if project.is_daemon:
            daemon_ref, _changed = self.runtime.daemons.reconcile(project, project_dir)
            self.runtime.daemons.start(project, daemon_ref)
        if project.exposes_port:
            proxy_ref, _changed = self.runtime.proxies.reconcile(project)
        return daemon_ref, proxy_ref

    def remove_artifacts(self, name: str, daemon: DaemonRef | None, proxy: ProxyRef | None) -> None:
        if daemon is not None:
            self.runtime.daemons.remove(name, daemon)
        if proxy is not None:
            self.runtime.proxies.remove(name, proxy)


class ProjectLifecycle:
    """Runs the phases a Change calls for, for one project."""

    def __init__(
        self,
        change: Change,
        runtime: EngineRuntime,
        previous: SnapshotEntry | None = None,
    ):
        self.change = change
        self.runtime = runtime
        self.previous = previous
        self.outcome = ProjectOutcome(name=change.name, change=change)
        self._runner = PhaseRunner(runtime)
        self._plan: dict[str, list[ResolvedStep]] = {}

        config = runtime.config
        self.current: Project | None = config.get_project(change.name)
        self.current_tasks: dict[str, Task] = (
            config.referenced_tasks(self.current) if self.current else {}
        )
        self.current_dir: Path | None = config.project_dir(self.current) if self.current else None

        self.old: Project | None = previous.declared_project() if previous else None
        self.old_tasks: dict[str, Task] = previous.declared_tasks() if previous else {}
        self.old_dir: Path | None = Path(previous.project_dir) if previous else None

    # ── Preparation ─────────────────────────────────────────────

    @property
    def resolved(self) -> dict[str, list[ResolvedStep]]:
        return dict(self._plan)

    def _uses_previous(self, phase: str) -> bool:
        return phase in ("stop", "teardown")

    def prepare(self) -> dict[str, list[ResolvedStep]]:
        """Resolve every phase this change will run.

        Called for all projects before any of them starts, so a
        ConfigError aborts the apply with nothing executed.
        """
        for phase in self.change.phases:
            if self._uses_previous(phase):
                if self.old is None or self.old_dir is None:
                    self._plan[phase] = []
                    continue
                self._plan[phase] = resolve_phase(self.old, phase, self.old_tasks, self.old_dir)
            else:
                project, project_dir = self._require_current()
                self._plan[phase] = resolve_phase(project, phase, self.current_tasks, project_dir)
        return self._plan

    def _require_current(self) -> tuple[Project, Path]:
        if self.current is None or self.current_dir is None:
            raise ConfigError(f"project '{self.change.name}' is not in the configuration")
        return self.current, self.current_dir

    # ── State machine ───────────────────────────────────────────

    def _transition(self, new_state: ProjectState) -> None:
        old = self.outcome.state
        if new_state not in TRANSITIONS[old]:
            raise RuntimeError(f"illegal transition {old.value} → {new_state.value}")
        self.outcome.state = new_state
        self.outcome.history.append(new_state.value)
        logger.info("Project '%s': %s → %s", self.change.name, old.value, new_state.value)

    def run(self) -> ProjectOutcome:
        """Run all phases; never raises for step or reconcile failures."""
        with project_context(self.change.name):
            return self._run()

    def _run(self) -> ProjectOutcome:
        if not self._plan:
            self.prepare()

        daemon_ref: DaemonRef | None = self.previous.daemon if self.previous else None
        proxy_ref: ProxyRef | None = self.previous.proxy if self.previous else None

        for phase in self.change.phases:
            if self.runtime.cancel.is_set():
                self._transition(ProjectState.CANCELLED)
                return self.outcome

            self._transition(ProjectState(phase))
            try:
                if phase == "stop":
                    self._stop()
                elif phase == "teardown":
                    self._teardown()
                    daemon_ref = proxy_ref = None
                elif phase == "start":
                    daemon_ref, proxy_ref = self._start()
                elif phase == "setup":
                    self._setup()
                else:
                    self._steps(phase, self.current, self.current_dir)
            except PhaseCancelled:
                self.outcome.error = "cancelled"
                self._transition(ProjectState.CANCELLED)
                return self.outcome
            except (StepFailure, ReconcileFailure) as e:
                self.outcome.failed_phase = phase
                self.outcome.error = str(e)
                logger.error("✗ %s", e)
                self._transition(ProjectState.FAILED)
                return self.outcome
            except (ProconError, OSError) as e:
                self.outcome.failed_phase = phase
                self.outcome.error = str(e)
                logger.error("✗ %s:%s %s", self.change.name, phase, e)
                self._transition(ProjectState.FAILED)
                return self.outcome

        if self.change.kind == ChangeKind.REMOVED:
            self._transition(ProjectState.REMOVED)
            return self.outcome
        try:
            self.outcome.entry = self._entry(daemon_ref, proxy_ref)
        except ProconError as e:
            self.outcome.error = str(e)
            self._transition(ProjectState.FAILED)
            return self.outcome
        self._transition(ProjectState.APPLIED)
        return self.outcome

    # ── Phases ──────────────────────────────────────────────────

    def _steps(self, phase: str, project: Project | None, project_dir: Path | None) -> None:
        if project is None or project_dir is None:
            return
        result = self._runner.run_steps(project, phase, self._plan.get(phase, []), project_dir)
        self.outcome.phases.append(result)
        result.raise_for_failure()

    def _stop(self) -> None:
        self._steps("stop", self.old, self.old_dir)
        if self.previous and self.previous.daemon:
            self.runtime.daemons.stop(self.change.name, self.previous.daemon)

    def _teardown(self) -> None:
        if self.previous is None:
            return
        self._runner.remove_artifacts(self.change.name, self.previous.daemon, self.previous.proxy)
        self._steps("teardown", self.old, self.old_dir)

    def _setup(self) -> None:
        project, project_dir = self._require_current()
        self._runner.fetch_source(project)
        self._steps("setup", project, project_dir)

    def _start(self) -> tuple[DaemonRef | None, ProxyRef | None]:
        project, project_dir = self._require_current()
        if not project.is_daemon:
            self._steps("start", project, project_dir)
        return self._runner.start_artifacts(project, project_dir)

    def _entry(self, daemon: DaemonRef | None, proxy: ProxyRef | None) -> SnapshotEntry:
        project, project_dir = self._require_current()
        return SnapshotEntry(
            name=project.name,
            fingerprint=fingerprint(project, self.runtime.config.tasks),
            artifact_fingerprint=artifact_fingerprint(project),
            project_dir=str(project_dir),
            project=project.model_dump(mode="json", by_alias=True),
            tasks={
                name: task.model_dump(mode="json", by_alias=True)
                for name, task in self.current_tasks.items()
            },
            daemon=daemon if project.is_daemon else None,
            proxy=proxy if project.exposes_port else None,
        )

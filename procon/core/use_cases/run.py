"""
Run use case — execute named phases ad hoc.

Unlike apply, ``run`` does no diffing and never writes the snapshot:
it resolves the requested phases for the selected projects and runs
them, projects in parallel, phases in the order given. It does read
the snapshot, so ``start``/``stop`` of a daemon project whose unit is
installed go through the service manager instead of running the start
command in the foreground. ``setup`` fetches a project's ``source``
first, as apply does.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from procon.adapters.registry import AdapterRegistry, default_registry
from procon.core.config.loader import ConfigError, load_config
from procon.core.engine.executor import generate_operation_id
from procon.core.engine.lifecycle import EngineRuntime, PhaseCancelled, PhaseRunner
from procon.core.engine.steps import PhaseResult
from procon.core.engine.templating import ResolvedStep, resolve_phase
from procon.core.errors import ReconcileFailure, StepFailure
from procon.core.models.project import LIFECYCLE_PHASES, Project
from procon.core.models.state import DaemonRef, SnapshotEntry
from procon.core.observability.logging_config import project_context
from procon.core.persistence.audit import AuditEntry, AuditLog
from procon.core.persistence.state_file import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ProjectRun:
    """Phases run for one project."""

    name: str
    phases: list[PhaseResult] = field(default_factory=list)
    service_actions: list[str] = field(default_factory=list)
    failed_phase: str | None = None
    error: str | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "ok": self.ok,
            "cancelled": self.cancelled,
            "failed_phase": self.failed_phase,
            "error": self.error,
            "service_actions": self.service_actions,
            "phases": [p.to_dict() for p in self.phases],
        }


@dataclass
class RunResult:
    """Result of running phases."""

    operation_id: str = ""
    phases: list[str] = field(default_factory=list)
    projects: dict[str, ProjectRun] = field(default_factory=dict)
    dry_run: bool = False
    cancelled: bool = False
    duration_ms: int = 0
    error: str | None = None

    @property
    def failed(self) -> list[str]:
        return sorted(n for n, p in self.projects.items() if not p.ok and not p.cancelled)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed and not self.cancelled

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if not self.failed:
            return "ok"
        if len(self.failed) < len(self.projects):
            return "partial"
        return "failed"

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {"error": self.error}
        return {
            "operation_id": self.operation_id,
            "phases": self.phases,
            "dry_run": self.dry_run,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "failed": self.failed,
            "projects": {n: self.projects[n].to_dict() for n in sorted(self.projects)},
        }


class _ProjectJob:
    """One project's requested phases, resolved up front."""

    def __init__(
        self,
        project: Project,
        project_dir: Path,
        plan: dict[str, list[ResolvedStep]],
        entry: SnapshotEntry | None,
        runner: PhaseRunner,
    ):
        self.project = project
        self.project_dir = project_dir
        self.plan = plan
        self.entry = entry
        self.runner = runner
        self.outcome = ProjectRun(name=project.name)

    @property
    def _unit(self) -> DaemonRef | None:
        return self.entry.daemon if self.entry is not None else None

    def run(self) -> ProjectRun:
        with project_context(self.project.name):
            return self._run()

    def _run(self) -> ProjectRun:
        runtime = self.runner.runtime
        for phase, steps in self.plan.items():
            if runtime.cancel.is_set():
                self.outcome.cancelled = True
                self.outcome.error = "cancelled"
                return self.outcome
            try:
                if phase == "start" and self.project.is_daemon and self._unit is not None:
                    runtime.daemons.restart(self.project.name, self._unit)
                    self.outcome.service_actions.append(f"restart {self._unit.unit_name}")
                    continue

                if phase == "setup":
                    self.runner.fetch_source(self.project)
                result = self.runner.run_steps(self.project, phase, steps, self.project_dir)
                self.outcome.phases.append(result)
                result.raise_for_failure()

                if phase == "stop" and self._unit is not None:
                    runtime.daemons.stop(self.project.name, self._unit)
                    self.outcome.service_actions.append(f"stop {self._unit.unit_name}")
            except PhaseCancelled:
                self.outcome.cancelled = True
                self.outcome.error = "cancelled"
                return self.outcome
            except (StepFailure, ReconcileFailure) as e:
                self.outcome.failed_phase = phase
                self.outcome.error = str(e)
                logger.error("✗ %s", e)
                return self.outcome
        return self.outcome


def run_phases(
    phases: list[str],
    config_path: Path | None = None,
    projects: list[str] | None = None,
    dry_run: bool = False,
    mock_mode: bool = False,
    safe_mode: bool = False,
    registry: AdapterRegistry | None = None,
) -> RunResult:
    """Run ``phases`` for the selected projects.

    Args:
        phases: Phase names, run in this order.
        config_path: Optional explicit path to procon.yml.
        projects: Restrict to these projects. None = all.
        dry_run: Resolve and report, but do not execute anything.
        mock_mode: Fake every adapter.
        safe_mode: Fake only systemd and the proxy.
        registry: Optional pre-configured adapter registry.

    Returns:
        RunResult; ``error`` is set on ConfigError.
    """
    result = RunResult(phases=list(dict.fromkeys(phases)), dry_run=dry_run)
    started = time.monotonic()

    try:
        config = load_config(config_path)
        selected = config.select(projects)
        undeclared = [
            phase for phase in result.phases
            if phase not in LIFECYCLE_PHASES and not any(phase in p.phases for p in selected)
        ]
        if undeclared:
            raise ConfigError(f"No selected project declares phase(s): {', '.join(undeclared)}")
        snapshot = StateStore(config.state_dir).load()

        # Resolve everything before running anything.
        resolved = {}
        for project in selected:
            project_dir = config.project_dir(project)
            tasks = config.referenced_tasks(project)
            resolved[project.name] = (
                project,
                project_dir,
                {phase: resolve_phase(project, phase, tasks, project_dir) for phase in result.phases},
            )
    except ConfigError as e:
        result.error = str(e)
        return result

    if registry is None:
        registry = default_registry(config.settings, mock_mode=mock_mode, safe_mode=safe_mode)

    result.operation_id = generate_operation_id()
    runtime = EngineRuntime(
        config,
        registry,
        operation_id=result.operation_id,
        dry_run=dry_run,
        cancel=threading.Event(),
    )
    runner = PhaseRunner(runtime)
    jobs = [
        _ProjectJob(project, project_dir, plan, snapshot.get(name), runner)
        for name, (project, project_dir, plan) in resolved.items()
    ]
    for job in jobs:
        result.projects[job.project.name] = job.outcome

    if jobs:
        workers = max(1, min(config.settings.max_workers or len(jobs), len(jobs)))
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="procon-run")
        futures = [pool.submit(job.run) for job in jobs]
        try:
            for future in concurrent.futures.as_completed(futures):
                outcome = future.result()
                marker = "✓" if outcome.ok else "✗"
                logger.info("%s %s → %s", marker, outcome.name, ",".join(result.phases))
        except KeyboardInterrupt:
            logger.warning("Interrupted — letting running steps finish, skipping the rest")
            runtime.cancel.set()
            result.cancelled = True
            pool.shutdown(wait=True, cancel_futures=True)
            for job in jobs:
                if not job.outcome.phases and job.outcome.ok:
                    job.outcome.cancelled = True
                    job.outcome.error = "cancelled"
        finally:
            pool.shutdown(wait=True)

    result.duration_ms = int((time.monotonic() - started) * 1000)

    if not dry_run:
        AuditLog(config.state_dir).append(AuditEntry(
            operation_id=result.operation_id,
            operation_type="run",
            phase=",".join(result.phases),
            projects_affected=sorted(result.projects),
            status=result.status,
            projects_total=len(result.projects),
            projects_succeeded=sum(1 for p in result.projects.values() if p.ok),
            projects_failed=len(result.failed),
            duration_ms=result.duration_ms,
            errors=[f"{n}: {result.projects[n].error}" for n in result.failed],
        ))
    return result

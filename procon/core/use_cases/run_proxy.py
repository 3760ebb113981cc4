"""
Run-proxy use case — supervise daemons in the foreground.

    procon run-proxy web api     supervise these projects' start
                                 commands as child processes (what a
                                 generated unit's ExecStart runs)
    procon run-proxy             watch every unit recorded in the
                                 snapshot and restart the ones that stop

The first form returns once every daemon has ended for good; the
second runs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import functools
import hashlib
import json
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from procon.adapters.registry import default_registry
from procon.adapters.shell.command import nix_wrap
from procon.core.config.loader import ConfigError, load_config
from procon.core.engine.steps import StepContext
from procon.core.engine.templating import resolve_phase
from procon.core.errors import SupervisorFailure
from procon.core.models.config import Config
from procon.core.models.project import Project
from procon.core.persistence.state_file import StateStore
from procon.core.services.daemons import DaemonManager
from procon.core.services.supervisor import (
    DaemonSpec,
    ProcessRunner,
    Supervisor,
    SupervisorReport,
    UnitRunner,
)

logger = logging.getLogger(__name__)


@dataclass
class RunProxyResult:
    """Result of a supervisor run."""

    report: SupervisorReport | None = None
    mode: str = "process"           # process | unit
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"mode": self.mode}
        if self.error:
            result["error"] = self.error
        if self.report is not None:
            result["report"] = self.report.to_dict()
        return result


def start_command(config: Config, project: Project) -> tuple[str, str, dict[str, str]]:
    """The shell command, working directory and env of a project's start phase.

    Raises:
        ConfigError: The project has no start command.
    """
    project_dir = config.project_dir(project)
    steps = [
        step
        for step in resolve_phase(project, "start", config.referenced_tasks(project), project_dir)
        if step.kind == "run"
    ]
    if not steps:
        raise ConfigError(f"project '{project.name}' has no start command")

    command = " && ".join(f"cd {shlex.quote(step.cwd)} && {step.command}" for step in steps)
    if config.settings.uses_nix:
        packages = list(dict.fromkeys([*project.deps, *(d for s in steps for d in s.deps)]))
        if packages:
            command = nix_wrap(command, packages)

    context = StepContext(
        project=project.name,
        phase="start",
        project_dir=project_dir,
        env=dict(project.env),
    )
    return command, str(project_dir), context.environment


def process_specs(config: Config, names: list[str]) -> dict[str, DaemonSpec]:
    """One ProcessRunner spec per named project."""
    specs = {}
    stop_timeout = config.settings.supervisor.stop_timeout_seconds
    for project in config.select(names):
        command, cwd, env = start_command(config, project)
        identity = hashlib.sha256(
            json.dumps({"command": command, "cwd": cwd, "env": env}, sort_keys=True).encode("utf-8")
        ).hexdigest()
        specs[project.name] = DaemonSpec(
            name=project.name,
            identity=identity,
            restart=project.service.restart,
            make_runner=functools.partial(ProcessRunner, project.name, command, cwd, env, stop_timeout),
        )
    return specs


def unit_specs(store: StateStore, daemons: DaemonManager) -> dict[str, DaemonSpec]:
    """One UnitRunner spec per unit recorded in the snapshot."""
    specs = {}
    for name, entry in store.load().daemons().items():
        assert entry.daemon is not None
        specs[name] = DaemonSpec(
            name=name,
            identity=entry.daemon.content_hash,
            restart=entry.declared_project().service.restart,
            make_runner=functools.partial(UnitRunner, name, daemons, entry.daemon),
        )
    return specs


def run_proxy(
    projects: list[str] | None = None,
    config_path: Path | None = None,
    mock_mode: bool = False,
) -> RunProxyResult:
    """Supervise daemons until they end (process mode) or a signal (unit mode).

    Args:
        projects: Projects to run as child processes. None = watch units.
        config_path: Optional explicit path to procon.yml.
        mock_mode: Fake systemctl in unit mode.

    Returns:
        RunProxyResult; ``error`` is set on ConfigError or when a daemon
        ended unhealthy.
    """
    result = RunProxyResult(mode="process" if projects else "unit")

    try:
        config = load_config(config_path)
        settings = config.settings

        if projects:
            specs = process_specs(config, projects)
            source = functools.partial(dict, specs)
        else:
            store = StateStore(config.state_dir)
            store.load()
            daemons = DaemonManager(
                default_registry(settings, mock_mode=mock_mode),
                settings,
                artifacts_dir=store.artifacts_dir,
                config_path=config.source,
            )
            source = functools.partial(unit_specs, store, daemons)
    except ConfigError as e:
        result.error = str(e)
        return result

    logger.info("Supervising %s", ", ".join(projects) if projects else "registered units")
    supervisor = Supervisor(source, settings.supervisor, until_idle=bool(projects))
    result.report = supervisor.run()

    try:
        result.report.raise_for_unhealthy()
    except SupervisorFailure as e:
        result.error = str(e)
    return result

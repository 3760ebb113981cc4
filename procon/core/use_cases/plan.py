"""
Plan use case — what ``apply`` would do, without doing any of it.

Loads the config and the applied snapshot, diffs them, and resolves
every phase each change would run into concrete steps. Also lists
stale artifacts: unit files and proxy entries carrying procon's
prefix that no snapshot entry owns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from procon.adapters.registry import AdapterRegistry
from procon.core.config.loader import ConfigError, load_config
from procon.core.engine.diff import ChangeSet, diff
from procon.core.engine.executor import prepare_lifecycles
from procon.core.engine.lifecycle import EngineRuntime
from procon.core.models.config import Config
from procon.core.models.state import AppliedSnapshot
from procon.core.persistence.state_file import StateStore

logger = logging.getLogger(__name__)


@dataclass
class PlanResult:
    """Result of planning."""

    changeset: ChangeSet | None = None
    steps: dict[str, dict[str, list[dict[str, Any]]]] = field(default_factory=dict)
    artifacts: dict[str, dict[str, bool]] = field(default_factory=dict)
    stale_units: list[str] = field(default_factory=list)
    stale_entries: list[str] = field(default_factory=list)
    config_path: str | None = None
    error: str | None = None

    @property
    def has_changes(self) -> bool:
        return self.changeset is not None and not self.changeset.empty

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {"error": self.error}
        return {
            "config_path": self.config_path,
            "has_changes": self.has_changes,
            **(self.changeset.to_dict() if self.changeset else {}),
            "steps": self.steps,
            "artifacts": self.artifacts,
            "stale_units": self.stale_units,
            "stale_entries": self.stale_entries,
        }


def check_project_names(
    names: list[str] | tuple[str, ...] | None,
    config: Config,
    snapshot: AppliedSnapshot,
) -> list[str] | None:
    """Names may refer to configured or previously applied projects.

    Raises:
        ConfigError: A name is neither.
    """
    if not names:
        return None
    unknown = [n for n in names if n not in config.projects and n not in snapshot.entries]
    if unknown:
        raise ConfigError(f"Unknown project(s): {', '.join(unknown)}")
    return list(dict.fromkeys(names))


def build_plan(
    config: Config,
    snapshot: AppliedSnapshot,
    projects: list[str] | None = None,
) -> PlanResult:
    """Diff and resolve. Reads the filesystem, changes nothing."""
    result = PlanResult(config_path=config.source or None)
    selected = check_project_names(projects, config, snapshot)
    changeset = diff(config, snapshot, only=selected)
    result.changeset = changeset

    runtime = EngineRuntime(config, AdapterRegistry(mock_mode=True), dry_run=True)
    for lifecycle in prepare_lifecycles(changeset, runtime, snapshot):
        name = lifecycle.change.name
        plan = lifecycle.resolved
        result.steps[name] = {
            phase: [step.to_dict() for step in plan[phase]]
            for phase in lifecycle.change.phases
        }
        declared = lifecycle.current or lifecycle.old
        if declared is not None:
            result.artifacts[name] = {
                "daemon": declared.is_daemon,
                "proxy": declared.exposes_port,
            }

    owned_units = {e.daemon.unit_name for e in snapshot.entries.values() if e.daemon}
    owned_entries = {e.proxy.entry_path for e in snapshot.entries.values() if e.proxy}
    result.stale_units = [str(p) for p in runtime.daemons.stale_units(owned_units)]
    result.stale_entries = [str(p) for p in runtime.proxies.stale_entries(owned_entries)]
    return result


def plan(
    config_path: Path | None = None,
    projects: list[str] | None = None,
) -> PlanResult:
    """Compute what an apply would do.

    Args:
        config_path: Optional explicit path to procon.yml.
        projects: Restrict to these projects. None = all.

    Returns:
        PlanResult; ``error`` is set on ConfigError.
    """
    try:
        config = load_config(config_path)
        snapshot = StateStore(config.state_dir).load()
        result = build_plan(config, snapshot, projects)
    except ConfigError as e:
        return PlanResult(error=str(e))

    changeset = result.changeset
    assert changeset is not None
    logger.info(
        "Plan: %d added, %d changed, %d removed, %d unchanged",
        len(changeset.added),
        len(changeset.changed),
        len(changeset.removed),
        len(changeset.unchanged),
    )
    return result

"""
Config model — the root document built from procon.yml.

Rebuilt fresh on every invocation; never mutated after loading.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from procon.core.errors import ConfigError
from procon.core.models.project import Project, Task, TaskStep
from procon.core.models.settings import Settings


def _name_entries(value: Any, kind: str) -> Any:
    """Fill ``name`` from the mapping key, rejecting mismatches."""
    if not isinstance(value, dict):
        return value
    named = {}
    for key, body in value.items():
        key = str(key)
        if body is None:
            body = {}
        if isinstance(body, dict):
            declared = body.get("name", key)
            if declared != key:
                raise ValueError(f"{kind} '{key}' declares a different name '{declared}'")
            body = {**body, "name": key}
        named[key] = body
    return named


class Config(BaseModel):
    """A parsed, validated procon configuration."""

    model_config = ConfigDict(extra="forbid")

    version: int = 1
    settings: Settings = Field(default_factory=Settings)
    projects: dict[str, Project] = Field(default_factory=dict)
    tasks: dict[str, Task] = Field(default_factory=dict)
    include: list[str] = Field(default_factory=list)

    # Where the configuration was read from (set by the loader).
    source: str = Field(default="", exclude=True)

    @field_validator("projects", mode="before")
    @classmethod
    def _name_projects(cls, value: Any) -> Any:
        return _name_entries(value, "project")

    @field_validator("tasks", mode="before")
    @classmethod
    def _name_tasks(cls, value: Any) -> Any:
        return _name_entries(value, "task")

    # ── Paths ───────────────────────────────────────────────────

    @property
    def root_dir(self) -> Path:
        """Directory relative paths are resolved against."""
        if self.source:
            return Path(self.source).resolve().parent
        return Path.cwd()

    @property
    def state_dir(self) -> Path:
        return resolve_path(self.root_dir, self.settings.state_dir)

    def source_dir(self, project: Project) -> Path:
        """Where a project with a ``source`` gets its files fetched to."""
        return self.state_dir / "artifacts" / project.name / "source"

    def source_origin(self, project: Project) -> Path | None:
        if project.source is None:
            return None
        return resolve_path(self.root_dir, project.source.origin)

    def project_dir(self, project: Project) -> Path:
        """Absolute working directory of a project."""
        if project.source is not None:
            return resolve_path(self.source_dir(project), project.dir)
        return resolve_path(self.root_dir, project.dir)

    # ── Lookups ─────────────────────────────────────────────────

    def get_project(self, name: str) -> Project | None:
        return self.projects.get(name)

    def select(self, names: list[str] | tuple[str, ...] | None = None) -> list[Project]:
        """Projects to operate on; all of them when ``names`` is empty.

        Raises:
            ConfigError: If a requested name is not configured.
        """
        if not names:
            return [self.projects[n] for n in sorted(self.projects)]
        unknown = [n for n in names if n not in self.projects]
        if unknown:
            raise ConfigError(f"Unknown project(s): {', '.join(unknown)}")
        return [self.projects[n] for n in dict.fromkeys(names)]

    def referenced_tasks(self, project: Project) -> dict[str, Task]:
        """Every task the project reaches, following nested task steps."""
        return collect_tasks(project.task_refs(), self.tasks)


def collect_tasks(roots: set[str], tasks: dict[str, Task]) -> dict[str, Task]:
    """Transitive closure of task references (unknown names are skipped)."""
    found: dict[str, Task] = {}
    pending = sorted(roots)
    while pending:
        name = pending.pop()
        if name in found or name not in tasks:
            continue
        task = tasks[name]
        found[name] = task
        pending.extend(s.task for s in task.steps if isinstance(s, TaskStep))
    return dict(sorted(found.items()))


def resolve_path(base: Path, raw: str) -> Path:
    """Join ``raw`` to ``base`` unless absolute; expand ~ and normalise."""
    path = Path(os.path.expanduser(raw))
    if not path.is_absolute():
        path = base / path
    return Path(os.path.normpath(path))

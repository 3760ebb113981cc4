"""
Diff engine — current configuration vs. the applied snapshot.

    absent from snapshot            → Added
    present, fingerprint differs    → Changed
    present, fingerprint equal      → Unchanged (not in the change set)
    only in snapshot                → Removed

The fingerprint is a sha256 over the canonical JSON of everything a
project declares that affects what runs: phases and their steps in
order, deps, env, dir, source, port, proxy, service, plus the definitions of
every task it references. Editing a task therefore changes every
project that uses it. ``description`` is excluded.

A second, narrower fingerprint covers only what shapes generated
artifacts (dir, source, port, proxy, service, daemon-ness). A Changed
project whose artifact fingerprint also moved is torn down first.

``diff`` is pure: it reads its two inputs and returns a ChangeSet.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from procon.core.models.config import Config, collect_tasks
from procon.core.models.project import Project, Task
from procon.core.models.state import AppliedSnapshot

_IGNORED_FIELDS = {"description"}
_ARTIFACT_FIELDS = ("dir", "source", "port", "proxy", "service")


class ChangeKind(StrEnum):
    """Classification of a project in a change set."""

    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"

    def phases(self, teardown_first: bool = False) -> list[str]:
        """Lifecycle phases to run, in order."""
        if self == ChangeKind.ADDED:
            return ["setup", "build", "start"]
        if self == ChangeKind.CHANGED:
            head = ["teardown"] if teardown_first else []
            return [*head, "setup", "build", "start"]
        return ["stop", "teardown"]


@dataclass(frozen=True)
class Change:
    """One classified project."""

    name: str
    kind: ChangeKind
    teardown_first: bool = False

    @property
    def phases(self) -> list[str]:
        return self.kind.phases(self.teardown_first)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "teardown_first": self.teardown_first,
            "phases": self.phases,
        }


@dataclass
class ChangeSet:
    """Result of a diff. Unchanged projects are listed separately."""

    changes: dict[str, Change] = field(default_factory=dict)
    unchanged: list[str] = field(default_factory=list)

    def _names(self, kind: ChangeKind) -> list[str]:
        return sorted(n for n, c in self.changes.items() if c.kind == kind)

    @property
    def added(self) -> list[str]:
        return self._names(ChangeKind.ADDED)

    @property
    def changed(self) -> list[str]:
        return self._names(ChangeKind.CHANGED)

    @property
    def removed(self) -> list[str]:
        return self._names(ChangeKind.REMOVED)

    @property
    def empty(self) -> bool:
        return not self.changes

    def __len__(self) -> int:
        return len(self.changes)

    def __iter__(self):
        return iter(self.changes[n] for n in sorted(self.changes))

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "changed": self.changed,
            "removed": self.removed,
            "unchanged": sorted(self.unchanged),
            "changes": [c.to_dict() for c in self],
        }


def _digest(payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _declaration(project: Project) -> dict[str, Any]:
    return project.model_dump(mode="json", by_alias=True, exclude=_IGNORED_FIELDS)


def fingerprint(project: Project, tasks: dict[str, Task]) -> str:
    """Content fingerprint of a project and the tasks it reaches."""
    used = collect_tasks(project.task_refs(), tasks)
    return _digest({
        "project": _declaration(project),
        "tasks": {
            name: task.model_dump(mode="json", by_alias=True, exclude=_IGNORED_FIELDS)
            for name, task in used.items()
        },
    })


def artifact_fingerprint(project: Project) -> str:
    """Fingerprint of what the daemon unit and proxy entry are built from."""
    declared = _declaration(project)
    payload = {key: declared.get(key) for key in _ARTIFACT_FIELDS}
    payload["daemon"] = project.is_daemon
    return _digest(payload)


def diff(
    current: Config,
    applied: AppliedSnapshot,
    only: Iterable[str] | None = None,
) -> ChangeSet:
    """Classify every project as Added, Changed, Removed or Unchanged.

    Args:
        current: The configuration as loaded now.
        applied: The last applied snapshot.
        only: Restrict both sides to these project names.

    Returns:
        ChangeSet. Never mutates either input.
    """
    selected = set(only) if only else None

    def wanted(name: str) -> bool:
        return selected is None or name in selected

    result = ChangeSet()

    for name in sorted(current.projects):
        if not wanted(name):
            continue
        project = current.projects[name]
        entry = applied.entries.get(name)
        if entry is None:
            result.changes[name] = Change(name, ChangeKind.ADDED)
            continue

        if fingerprint(project, current.tasks) == entry.fingerprint:
            result.unchanged.append(name)
            continue

        result.changes[name] = Change(
            name,
            ChangeKind.CHANGED,
            teardown_first=artifact_fingerprint(project) != entry.artifact_fingerprint,
        )

    for name in sorted(applied.entries):
        if name not in current.projects and wanted(name):
            result.changes[name] = Change(name, ChangeKind.REMOVED)

    return result

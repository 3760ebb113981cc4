"""
AppliedSnapshot — the last configuration that was successfully applied.

Serialized to .procon/state.json. It is the only durable state procon
has: the diff engine compares against it, teardown of a removed
project reads the old declaration back out of it, and run-proxy reads
it to learn which daemons exist.

An entry is (re)written only after its project's whole apply
succeeded; a failed project keeps whatever entry it had before.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from procon.core.models.project import Project, Task


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class DaemonRef(BaseModel):
    """A service unit procon installed."""

    unit_name: str
    unit_path: str
    content_hash: str


class ProxyRef(BaseModel):
    """A reverse-proxy entry procon installed."""

    entry_path: str
    content_hash: str
    domain: str
    port: int


class SnapshotEntry(BaseModel):
    """One applied project."""

    name: str
    fingerprint: str
    artifact_fingerprint: str = ""
    applied_at: str = Field(default_factory=_now_iso)
    project_dir: str = ""

    # Declarations as applied, so a removed project can still be
    # stopped and torn down with the steps it was set up with.
    project: dict[str, Any] = Field(default_factory=dict)
    tasks: dict[str, dict[str, Any]] = Field(default_factory=dict)

    daemon: DaemonRef | None = None
    proxy: ProxyRef | None = None

    def declared_project(self) -> Project:
        return Project.model_validate(self.project)

    def declared_tasks(self) -> dict[str, Task]:
        return {name: Task.model_validate(body) for name, body in self.tasks.items()}


class OperationRecord(BaseModel):
    """Summary of the last apply."""

    operation_id: str = ""
    command: str = ""
    started_at: str = ""
    ended_at: str = ""
    status: str = ""  # ok, partial, failed, cancelled
    projects_total: int = 0
    projects_succeeded: int = 0
    projects_failed: int = 0
    failures: dict[str, str] = Field(default_factory=dict)


class AppliedSnapshot(BaseModel):
    """Root state document — serialized to .procon/state.json."""

    # ── Schema ───────────────────────────────────────────────────
    schema_version: int = 1

    # ── Timestamps ───────────────────────────────────────────────
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    # ── Applied projects ─────────────────────────────────────────
    entries: dict[str, SnapshotEntry] = Field(default_factory=dict)

    # ── Last operation ───────────────────────────────────────────
    last_operation: OperationRecord = Field(default_factory=OperationRecord)

    # ── Extensible metadata ──────────────────────────────────────
    metadata: dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def get(self, name: str) -> SnapshotEntry | None:
        return self.entries.get(name)

    def daemons(self) -> dict[str, SnapshotEntry]:
        """Entries that own a service unit."""
        return {name: e for name, e in sorted(self.entries.items()) if e.daemon}

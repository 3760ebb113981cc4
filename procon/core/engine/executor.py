"""
Engine executor — apply a change set across projects.

Flow:
    change set → prepare every lifecycle (resolve all phases)
               → run lifecycles in parallel, one per project
               → collect outcomes → merge into snapshot → audit

Projects are independent: each runs on its own worker and a failure
in one never stops another. Preparation happens up front, so a
ConfigError anywhere aborts before any step has run.

Cancellation (Ctrl-C) sets a shared event. Running projects stop
before their next step, queued ones never start, and whatever already
reached a terminal success is still merged and saved.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from procon.core.engine.diff import ChangeSet
from procon.core.engine.lifecycle import EngineRuntime, ProjectLifecycle, ProjectOutcome, ProjectState
from procon.core.models.state import AppliedSnapshot, OperationRecord
from procon.core.persistence.audit import AuditEntry, AuditLog

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ApplyReport:
    """Result of applying a change set."""

    operation_id: str = ""
    command: str = "apply"
    started_at: str = field(default_factory=_now_iso)
    ended_at: str = ""
    duration_ms: int = 0
    outcomes: dict[str, ProjectOutcome] = field(default_factory=dict)
    unchanged: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> list[str]:
        return sorted(n for n, o in self.outcomes.items() if o.succeeded)

    @property
    def failed(self) -> list[str]:
        return sorted(n for n, o in self.outcomes.items() if o.failed)

    @property
    def interrupted(self) -> list[str]:
        return sorted(
            n for n, o in self.outcomes.items()
            if o.state in (ProjectState.CANCELLED, ProjectState.PENDING)
        )

    @property
    def all_ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if not self.failed:
            return "ok"
        if self.succeeded:
            return "partial"
        return "failed"

    def failures(self) -> dict[str, str]:
        return {n: self.outcomes[n].error or "failed" for n in self.failed}

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "command": self.command,
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.interrupted,
            "unchanged": sorted(self.unchanged),
            "projects": {n: self.outcomes[n].to_dict() for n in sorted(self.outcomes)},
        }


def prepare_lifecycles(
    changeset: ChangeSet,
    runtime: EngineRuntime,
    snapshot: AppliedSnapshot,
) -> list[ProjectLifecycle]:
    """Build and resolve a lifecycle per change.

    Raises:
        ConfigError: Any phase of any project fails to resolve.
    """
    lifecycles = []
    for change in changeset:
        lifecycle = ProjectLifecycle(change, runtime, previous=snapshot.get(change.name))
        lifecycle.prepare()
        lifecycles.append(lifecycle)
    return lifecycles


def execute_changeset(
    changeset: ChangeSet,
    runtime: EngineRuntime,
    snapshot: AppliedSnapshot,
    max_workers: int | None = None,
) -> ApplyReport:
    """Run every change, projects in parallel.

    Args:
        changeset: What to apply.
        runtime: Shared collaborators (registry, managers, cancel event).
        snapshot: The snapshot the change set was computed against.
        max_workers: Upper bound on concurrently applied projects.

    Returns:
        ApplyReport. ``cancelled`` is set if the run was interrupted.
    """
    report = ApplyReport(operation_id=runtime.operation_id, unchanged=list(changeset.unchanged))
    started = time.monotonic()

    lifecycles = prepare_lifecycles(changeset, runtime, snapshot)
    for lifecycle in lifecycles:
        report.outcomes[lifecycle.change.name] = lifecycle.outcome

    if lifecycles:
        workers = max(1, min(max_workers or len(lifecycles), len(lifecycles)))
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="procon-apply",
        )
        futures = {pool.submit(lc.run): lc for lc in lifecycles}
        try:
            for future in concurrent.futures.as_completed(futures):
                outcome = future.result()
                report.outcomes[outcome.name] = outcome
                marker = "✓" if outcome.succeeded else "✗"
                logger.info("%s %s → %s", marker, outcome.name, outcome.state.value)
        except KeyboardInterrupt:
            logger.warning("Interrupted — letting running steps finish, skipping the rest")
            runtime.cancel.set()
            report.cancelled = True
            pool.shutdown(wait=True, cancel_futures=True)
            for future, lifecycle in futures.items():
                if future.done() and not future.cancelled() and future.exception() is None:
                    report.outcomes[lifecycle.change.name] = future.result()
        finally:
            pool.shutdown(wait=True)

    report.cancelled = report.cancelled or runtime.cancel.is_set()
    report.ended_at = _now_iso()
    report.duration_ms = int((time.monotonic() - started) * 1000)
    return report


def merge_outcomes(snapshot: AppliedSnapshot, report: ApplyReport) -> AppliedSnapshot:
    """Fold successful outcomes into the snapshot.

    Applied projects get their new entry, removed ones lose theirs.
    Failed and cancelled projects keep whatever entry they had.
    """
    for name, outcome in report.outcomes.items():
        if outcome.state == ProjectState.APPLIED and outcome.entry is not None:
            snapshot.entries[name] = outcome.entry
        elif outcome.state == ProjectState.REMOVED:
            snapshot.entries.pop(name, None)

    snapshot.last_operation = OperationRecord(
        operation_id=report.operation_id,
        command=report.command,
        started_at=report.started_at,
        ended_at=report.ended_at,
        status=report.status,
        projects_total=report.total,
        projects_succeeded=len(report.succeeded),
        projects_failed=len(report.failed),
        failures=report.failures(),
    )
    return snapshot


def record_apply(report: ApplyReport, audit: AuditLog) -> None:
    """Append the apply to the audit log."""
    entry = AuditEntry(
        operation_id=report.operation_id,
        operation_type=report.command,
        projects_affected=sorted(report.outcomes),
        status=report.status,
        projects_total=report.total,
        projects_succeeded=len(report.succeeded),
        projects_failed=len(report.failed),
        duration_ms=report.duration_ms,
        errors=[f"{n}: {e}" for n, e in report.failures().items()],
        context={
            "changes": {n: o.change.kind.value for n, o in report.outcomes.items()},
            "unchanged": sorted(report.unchanged),
        },
    )
    audit.append(entry)


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"

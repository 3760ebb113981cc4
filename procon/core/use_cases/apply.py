"""
Apply use case — converge the host on the configuration.

The full vertical slice:
    load config → lock → load snapshot → diff → execute (parallel)
      → merge outcomes → save snapshot → audit → unlock

Projects fail independently; the snapshot is saved whenever anything
ran, so the projects that did succeed are recorded even when others
failed or the run was interrupted.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from procon.adapters.registry import AdapterRegistry, default_registry
from procon.core.config.loader import ConfigError, load_config
from procon.core.engine.diff import ChangeSet, diff
from procon.core.engine.executor import (
    ApplyReport,
    execute_changeset,
    generate_operation_id,
    merge_outcomes,
    record_apply,
)
from procon.core.engine.lifecycle import EngineRuntime
from procon.core.errors import LockContention
from procon.core.persistence.audit import AuditLog
from procon.core.persistence.state_file import StateStore
from procon.core.use_cases.plan import check_project_names

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Result of an apply."""

    report: ApplyReport | None = None
    changeset: ChangeSet | None = None
    config_path: str | None = None
    error: str | None = None
    lock_contention: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and (self.report is None or self.report.all_ok)

    @property
    def cancelled(self) -> bool:
        return self.report is not None and self.report.cancelled

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {"error": self.error, "lock_contention": self.lock_contention}
        result: dict[str, Any] = {"config_path": self.config_path}
        if self.changeset is not None:
            result["changes"] = self.changeset.to_dict()
        if self.report is not None:
            result["report"] = self.report.to_dict()
        return result


def apply(
    config_path: Path | None = None,
    projects: list[str] | None = None,
    wait: bool = False,
    mock_mode: bool = False,
    safe_mode: bool = False,
    registry: AdapterRegistry | None = None,
    cancel: threading.Event | None = None,
) -> ApplyResult:
    """Apply the configuration.

    Args:
        config_path: Optional explicit path to procon.yml.
        projects: Restrict to these projects. None = all.
        wait: Wait for a concurrent apply instead of failing.
        mock_mode: Fake every adapter (nothing touches the host).
        safe_mode: Fake only systemd and the proxy.
        registry: Optional pre-configured adapter registry.
        cancel: Optional event to interrupt the apply from elsewhere.

    Returns:
        ApplyResult. ``error`` is set on ConfigError or LockContention;
        per-project failures are in ``report``.
    """
    result = ApplyResult()

    try:
        config = load_config(config_path)
        result.config_path = config.source
        store = StateStore(config.state_dir)

        with store.lock(wait=wait):
            snapshot = store.load()
            selected = check_project_names(projects, config, snapshot)
            changeset = diff(config, snapshot, only=selected)
            result.changeset = changeset

            if changeset.empty:
                logger.info("Nothing to apply: %d project(s) up to date", len(changeset.unchanged))
                result.report = ApplyReport(unchanged=list(changeset.unchanged))
                return result

            if registry is None:
                registry = default_registry(config.settings, mock_mode=mock_mode, safe_mode=safe_mode)

            runtime = EngineRuntime(
                config,
                registry,
                operation_id=generate_operation_id(),
                cancel=cancel or threading.Event(),
            )
            report = execute_changeset(
                changeset,
                runtime,
                snapshot,
                max_workers=config.settings.max_workers,
            )
            result.report = report

            merge_outcomes(snapshot, report)
            store.save(snapshot)
            record_apply(report, AuditLog(config.state_dir))

    except LockContention as e:
        result.error = str(e)
        result.lock_contention = True
    except ConfigError as e:
        result.error = str(e)

    return result

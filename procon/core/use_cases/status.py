"""
Status use case — what is applied, what last happened, what is pending.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from procon.core.config.loader import ConfigError, load_config
from procon.core.engine.diff import ChangeSet, diff
from procon.core.models.state import AppliedSnapshot
from procon.core.persistence.audit import AuditEntry, AuditLog
from procon.core.persistence.state_file import StateStore


@dataclass
class StatusResult:
    """Applied snapshot plus pending changes."""

    snapshot: AppliedSnapshot | None = None
    pending: ChangeSet | None = None
    recent: list[AuditEntry] = field(default_factory=list)
    config_path: str | None = None
    state_path: str | None = None
    lock_holder: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        if self.error:
            return {"error": self.error}

        result: dict[str, Any] = {
            "config_path": self.config_path,
            "state_path": self.state_path,
            "lock_holder": self.lock_holder or None,
        }
        if self.snapshot is not None:
            result["projects"] = {
                name: {
                    "applied_at": entry.applied_at,
                    "project_dir": entry.project_dir,
                    "fingerprint": entry.fingerprint[:12],
                    "unit": entry.daemon.unit_name if entry.daemon else None,
                    "proxy": (
                        f"{entry.proxy.domain} → 127.0.0.1:{entry.proxy.port}" if entry.proxy else None
                    ),
                }
                for name, entry in sorted(self.snapshot.entries.items())
            }
            result["last_operation"] = self.snapshot.last_operation.model_dump(mode="json")
        if self.pending is not None:
            result["pending"] = self.pending.to_dict()
        result["recent"] = [e.model_dump(mode="json") for e in self.recent]
        return result


def get_status(config_path: Path | None = None, recent: int = 5) -> StatusResult:
    """Get the applied state of every project.

    Args:
        config_path: Optional explicit path to procon.yml.
        recent: How many audit entries to include.

    Returns:
        StatusResult with snapshot, pending changes, and recent history.
    """
    result = StatusResult()

    try:
        config = load_config(config_path)
        store = StateStore(config.state_dir)
        snapshot = store.load()
    except ConfigError as e:
        result.error = str(e)
        return result

    result.config_path = config.source
    result.state_path = str(store.path)
    result.snapshot = snapshot
    result.pending = diff(config, snapshot)
    result.lock_holder = store.holder()
    result.recent = AuditLog(config.state_dir).tail(recent)
    return result

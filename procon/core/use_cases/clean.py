"""
Clean use case — drop rendered artifact copies nobody owns.

Every apply keeps a copy of each generated unit under
``<state_dir>/artifacts/<project>/``. Once a project is torn down its
copy is just clutter. Installed units and proxy entries are never
touched here; those are removed by teardown.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from procon.core.config.loader import ConfigError, load_config
from procon.core.errors import LockContention
from procon.core.persistence.audit import AuditEntry, AuditLog
from procon.core.persistence.state_file import StateStore

logger = logging.getLogger(__name__)


@dataclass
class CleanResult:
    """What was (or would be) removed."""

    removed: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    dry_run: bool = False
    error: str | None = None
    lock_contention: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {"error": self.error, "lock_contention": self.lock_contention}
        return {"removed": self.removed, "kept": self.kept, "dry_run": self.dry_run}


def clean(
    config_path: Path | None = None,
    projects: list[str] | None = None,
    dry_run: bool = False,
) -> CleanResult:
    """Remove artifact directories.

    Args:
        config_path: Optional explicit path to procon.yml.
        projects: Remove these projects' directories. None = every
            directory whose project is not in the snapshot.
        dry_run: Report only.

    Returns:
        CleanResult.
    """
    result = CleanResult(dry_run=dry_run)

    try:
        config = load_config(config_path)
        store = StateStore(config.state_dir)
        with store.lock():
            snapshot = store.load()
            root = store.artifacts_dir
            present = sorted(p.name for p in root.iterdir() if p.is_dir()) if root.is_dir() else []

            if projects:
                targets = [n for n in dict.fromkeys(projects) if n in present]
            else:
                targets = [n for n in present if n not in snapshot.entries]
            result.kept = [n for n in present if n not in targets]

            for name in targets:
                if not dry_run:
                    shutil.rmtree(root / name)
                result.removed.append(name)
                logger.info("%s artifacts of '%s'", "Would remove" if dry_run else "Removed", name)

            if result.removed and not dry_run:
                AuditLog(config.state_dir).append(AuditEntry(
                    operation_type="clean",
                    projects_affected=result.removed,
                    status="ok",
                    projects_total=len(result.removed),
                    projects_succeeded=len(result.removed),
                ))

    except LockContention as e:
        result.error = str(e)
        result.lock_contention = True
    except ConfigError as e:
        result.error = str(e)
    except OSError as e:
        result.error = f"Cannot remove artifacts: {e}"

    return result

"""
Audit log — one NDJSON line per operation in ``<state_dir>/audit.ndjson``.

apply, run and clean each append an entry saying which projects they
touched and how those ended; ``procon status`` shows the tail. Lines
are only ever appended.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

AUDIT_FILE = "audit.ndjson"


class AuditEntry(BaseModel):
    """What one operation did."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation_id: str = ""
    operation_type: str = ""        # apply | run | clean
    phase: str = ""                 # run: the phases, comma-separated
    projects_affected: list[str] = Field(default_factory=list)
    status: str = ""                # ok | partial | failed | cancelled
    projects_total: int = 0
    projects_succeeded: int = 0
    projects_failed: int = 0
    duration_ms: int = 0
    errors: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)


class AuditLog:
    """The audit file of one state directory."""

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir) / AUDIT_FILE

    def append(self, entry: AuditEntry) -> None:
        """Add ``entry``. Failing to write is logged, not raised."""
        line = entry.model_dump_json() + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.error("Cannot write audit log %s: %s", self.path, e)
            return
        logger.debug("Audit: %s %s %s", entry.operation_type, entry.operation_id, entry.status)

    def entries(self) -> Iterator[AuditEntry]:
        """Every readable entry, oldest first."""
        try:
            with self.path.open(encoding="utf-8") as f:
                for number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        yield AuditEntry.model_validate(json.loads(line))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("%s:%d: unreadable audit entry (%s)", self.path, number, e)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error("Cannot read audit log %s: %s", self.path, e)

    def tail(self, n: int = 20) -> list[AuditEntry]:
        """The last ``n`` entries, oldest first."""
        return list(deque(self.entries(), maxlen=n))

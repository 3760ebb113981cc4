"""
Restart backoff — how run-proxy decides when (and whether) to restart.

Delay grows exponentially from ``backoff_seconds`` up to
``max_backoff_seconds``. After ``max_restarts`` restarts without an
intervening healthy stretch the daemon is given up on. A process that
stays up for ``healthy_after_seconds`` earns its budget back; a launch
that fails never counts as a run, however long ago the last good start
was.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from procon.core.models.settings import SupervisorSettings

logger = logging.getLogger(__name__)


@dataclass
class RestartTracker:
    """Restart bookkeeping for one supervised daemon."""

    name: str
    max_restarts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    healthy_after: float = 30.0
    restarts: int = 0
    total_restarts: int = 0
    started_at: float | None = None
    last_exit_code: int | None = None

    @classmethod
    def from_settings(cls, name: str, settings: SupervisorSettings) -> RestartTracker:
        return cls(
            name=name,
            max_restarts=settings.max_restarts,
            base_delay=settings.backoff_seconds,
            max_delay=settings.max_backoff_seconds,
            healthy_after=settings.healthy_after_seconds,
        )

    @property
    def exhausted(self) -> bool:
        """Whether the restart budget is used up."""
        return self.restarts >= self.max_restarts

    def mark_started(self) -> None:
        self.started_at = time.monotonic()

    def uptime(self) -> float:
        """Seconds the current run has been up; 0 when nothing is running."""
        if self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at

    def record_exit(self, exit_code: int | None) -> None:
        """Note the end of the current run; a long enough run resets the budget."""
        self.last_exit_code = exit_code
        ran = self.started_at is not None
        uptime = self.uptime()
        self.started_at = None
        if self.restarts and ran and uptime >= self.healthy_after:
            logger.debug("Daemon '%s' was healthy for %.0fs, resetting restarts", self.name, uptime)
            self.restarts = 0

    def next_delay(self) -> float:
        """Count one restart and return how long to wait before it."""
        self.restarts += 1
        self.total_restarts += 1
        delay = min(self.base_delay * (2 ** (self.restarts - 1)), self.max_delay)
        logger.debug(
            "Daemon '%s' restart %d/%d in %.1fs",
            self.name,
            self.restarts,
            self.max_restarts,
            delay,
        )
        return delay

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "restarts": self.restarts,
            "total_restarts": self.total_restarts,
            "max_restarts": self.max_restarts,
            "last_exit_code": self.last_exit_code,
        }

"""
Systemd adapter — systemctl calls for procon's units.

The unit files are written by the filesystem adapter; this one only
tells systemd about them (daemon-reload) and drives them.
"""

from __future__ import annotations

import logging
import shutil
import subprocess

from procon.adapters.base import Adapter, ExecutionContext
from procon.core.models.action import Receipt

logger = logging.getLogger(__name__)

# systemctl exit status for "unit not loaded": stopping or disabling
# a unit that is not there already leaves it stopped and disabled.
_NOT_LOADED = 5

_TIMEOUT = 90


class SystemdAdapter(Adapter):
    """Params: ``operation`` and, except for daemon-reload, ``unit``."""

    operations = {
        "daemon-reload": (),
        "start": ("unit",),
        "stop": ("unit",),
        "restart": ("unit",),
        "enable": ("unit",),
        "disable": ("unit",),
        "is-active": ("unit",),
    }

    def __init__(self, user: bool = True):
        self._user = user

    @property
    def name(self) -> str:
        return "systemd"

    def is_available(self) -> bool:
        return shutil.which("systemctl") is not None

    def check(self, context: ExecutionContext) -> str:
        return "" if self.is_available() else "systemctl not found on PATH"

    def command(self, operation: str, unit: str | None = None) -> list[str]:
        scope = ["--user"] if self._user else []
        return ["systemctl", *scope, operation, *([unit] if unit else [])]

    def execute(self, context: ExecutionContext) -> Receipt:
        operation = context.operation
        unit = context.params.get("unit")
        argv = self.command(operation, unit)

        logger.debug("$ %s", " ".join(argv))
        try:
            result = subprocess.run(argv, capture_output=True, text=True, timeout=_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            return context.fail(f"systemctl {operation} failed: {e}", operation=operation, unit=unit)

        if operation == "is-active":
            # The answer is in stdout; a non-zero exit just means "not active".
            state = result.stdout.strip() or "unknown"
            return context.succeed(state, operation=operation, unit=unit,
                                   active_state=state, return_code=result.returncode)

        accept = (0, _NOT_LOADED) if operation in ("stop", "disable") else (0,)
        return context.finished(result, accept, operation=operation, unit=unit)

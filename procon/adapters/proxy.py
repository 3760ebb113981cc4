"""
Proxy adapter — validate and reload the host reverse proxy.

Entries are written by the filesystem adapter. This adapter runs the
configured commands (``nginx -t`` / ``nginx -s reload`` by default,
``caddy validate`` / ``caddy reload`` for caddy).
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess

from procon.adapters.base import Adapter, ExecutionContext
from procon.core.models.action import Receipt
from procon.core.models.settings import ProxySettings

logger = logging.getLogger(__name__)

_TIMEOUT = 60


class ProxyAdapter(Adapter):
    """Params: ``operation`` ('validate' or 'reload')."""

    operations = {"validate": (), "reload": ()}

    def __init__(self, settings: ProxySettings):
        self._settings = settings
        self._commands = {
            "validate": settings.resolved_validate_command(),
            "reload": settings.resolved_reload_command(),
        }

    @property
    def name(self) -> str:
        return "proxy"

    def is_available(self) -> bool:
        return shutil.which(shlex.split(self._commands["reload"])[0]) is not None

    def execute(self, context: ExecutionContext) -> Receipt:
        command = self._commands[context.operation]
        logger.debug("$ %s", command)
        try:
            result = subprocess.run(shlex.split(command), capture_output=True, text=True, timeout=_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            return context.fail(f"{self._settings.kind} {context.operation} failed: {e}", command=command)
        # nginx -t reports success on stderr
        if result.returncode == 0 and not result.stdout.strip():
            result.stdout = result.stderr
        return context.finished(result, operation=context.operation, command=command)

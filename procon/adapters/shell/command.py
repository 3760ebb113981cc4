"""
Shell adapter — runs ``run`` steps.

The command goes to ``sh -c`` in the step's working directory with the
project env layered over procon's own environment. Under the nix
package manager it is wrapped in ``nix-shell -p <deps> --run`` so the
step sees its dependencies without a global install.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path

from procon.adapters.base import Adapter, ExecutionContext
from procon.core.models.action import Receipt

logger = logging.getLogger(__name__)


def nix_wrap(command: str, packages: list[str]) -> str:
    """``command`` run inside ``nix-shell -p packages``."""
    return f"nix-shell -p {' '.join(shlex.quote(p) for p in packages)} --run {shlex.quote(command)}"


class ShellCommandAdapter(Adapter):
    """Params: ``command``; optional ``cwd``, ``env``, ``timeout``,
    ``packages`` and ``nix`` (wrap in nix-shell with ``packages``).
    """

    def __init__(self, default_timeout: int = 1800):
        self._default_timeout = default_timeout

    @property
    def name(self) -> str:
        return "shell"

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def check(self, context: ExecutionContext) -> str:
        if not context.params.get("command"):
            return "Missing required param: 'command'"
        # dry-run does not need the directory yet
        if not context.dry_run and not Path(context.working_dir).is_dir():
            return f"Working directory does not exist: {context.working_dir}"
        if context.params.get("nix") and shutil.which("nix-shell") is None:
            return "nix-shell not found on PATH"
        return ""

    def execute(self, context: ExecutionContext) -> Receipt:
        command = context.params["command"]
        packages = context.params.get("packages") or []
        if context.params.get("nix") and packages:
            command = nix_wrap(command, list(packages))
        timeout = context.params.get("timeout") or self._default_timeout
        env = {**os.environ, **{k: str(v) for k, v in (context.params.get("env") or {}).items()}}

        logger.debug("$ %s  (in %s)", command, context.working_dir)
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=context.working_dir,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return context.fail(f"Command timed out after {timeout}s", command=command, timeout=timeout)
        except OSError as e:
            return context.fail(f"Cannot run command: {e}", command=command)
        return context.finished(result, command=command)

"""
Package adapter — make dependencies present.

Every package is checked with the manager's ``check`` template and only
the missing ones go through ``install``. Nothing missing is a success
with an empty ``installed`` list, so an install step can run any
number of times.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess

from procon.adapters.base import Adapter, ExecutionContext
from procon.core.errors import ConfigError
from procon.core.models.action import Receipt
from procon.core.models.settings import PackageManagerConfig, Settings

logger = logging.getLogger(__name__)

_CHECK_TIMEOUT = 120


class PackageAdapter(Adapter):
    """Params: ``packages``; optional ``manager`` (defaults to the
    configured one), ``cwd`` and ``timeout``.
    """

    def __init__(self, settings: Settings):
        self._settings = settings

    @property
    def name(self) -> str:
        return "packages"

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def _manager(self, context: ExecutionContext) -> tuple[str, PackageManagerConfig | None]:
        name = context.params.get("manager") or self._settings.package_manager
        return name, self._settings.package_manager_config(name)

    def check(self, context: ExecutionContext) -> str:
        if not context.params.get("packages"):
            return "Missing required param: 'packages'"
        name, config = self._manager(context)
        return "" if config is not None else f"Unknown package manager '{name}'"

    def missing(self, packages: list[str], manager: str, cwd: str = ".") -> list[str]:
        """The packages whose check command does not succeed.

        Raises:
            ConfigError: If ``manager`` is not configured.
        """
        config = self._settings.package_manager_config(manager)
        if config is None:
            raise ConfigError(f"Unknown package manager '{manager}'")
        absent = []
        for package in packages:
            check_cmd = config.check.format(package=shlex.quote(package))
            try:
                found = subprocess.run(
                    check_cmd, shell=True, cwd=cwd, capture_output=True, timeout=_CHECK_TIMEOUT,
                ).returncode == 0
            except subprocess.TimeoutExpired:
                found = False
            if not found:
                absent.append(package)
        return absent

    def execute(self, context: ExecutionContext) -> Receipt:
        packages = list(context.params["packages"])
        manager, config = self._manager(context)
        if config is None:
            return context.fail(f"Unknown package manager '{manager}'", packages=packages)
        cwd = context.working_dir
        timeout = context.params.get("timeout") or self._settings.step_timeout

        try:
            absent = self.missing(packages, manager, cwd)
        except OSError as e:
            return context.fail(f"Cannot check packages: {e}", manager=manager, packages=packages)
        present = [p for p in packages if p not in absent]

        installed: list[str] = []
        for package in absent:
            command = config.install.format(package=shlex.quote(package))
            if self._settings.sudo:
                command = f"sudo -n {command}"
            logger.info("Installing %s (%s)", package, manager)
            try:
                result = subprocess.run(
                    command, shell=True, cwd=cwd, capture_output=True, text=True, timeout=timeout,
                )
            except subprocess.TimeoutExpired:
                return context.fail(f"Installing {package} timed out after {timeout}s",
                                    manager=manager, package=package, installed=installed)
            except OSError as e:
                return context.fail(f"Cannot install {package}: {e}",
                                    manager=manager, package=package, installed=installed)
            if result.returncode != 0:
                return context.finished(result, manager=manager, package=package, installed=installed)
            installed.append(package)

        summary = f"Installed {', '.join(installed)}" if installed else "All packages already installed"
        return context.succeed(summary, manager=manager, installed=installed, already_installed=present)

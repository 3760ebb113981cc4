"""
Daemon manager — systemd units for projects with a long-running start.

The unit does not run the project's start command directly. It runs
``procon run-proxy <project>``, which resolves the start phase from
the configuration and supervises the process with procon's own
restart policy; systemd only has to keep run-proxy alive.

Reconciliation is by content:
    unit file absent            → install, daemon-reload, enable
    unit file differs           → overwrite, daemon-reload, enable
    unit file identical         → nothing
A rendered copy is also kept under ``<state_dir>/artifacts/<name>/``.
While systemd is faked (``--safe``) the unit directory is never written.

Every failed receipt becomes a ReconcileFailure, which fails the
phase (start or teardown) that asked for it.
"""

from __future__ import annotations

import logging
import shlex
import sys
from pathlib import Path

from procon.adapters.registry import AdapterRegistry
from procon.core.errors import ReconcileFailure
from procon.core.models.action import Action, Receipt
from procon.core.models.project import Project
from procon.core.models.settings import Settings
from procon.core.models.state import DaemonRef
from procon.core.models.template import GeneratedFile

logger = logging.getLogger(__name__)


_UNIT_TEMPLATE = """\
# Generated by procon for project '{name}'. Changes will be overwritten.
[Unit]
Description=procon project {name}
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
WorkingDirectory={working_dir}
ExecStart={exec_start}
Restart=no
KillMode=mixed
TimeoutStopSec={stop_timeout}

[Install]
WantedBy={wanted_by}
"""


def default_procon_command() -> str:
    """How a unit calls back into this installation of procon."""
    return f"{shlex.quote(sys.executable)} -m procon"


class DaemonManager:
    """Install, update, start, stop and remove project units."""

    def __init__(
        self,
        registry: AdapterRegistry,
        settings: Settings,
        artifacts_dir: Path,
        config_path: str,
        operation_id: str = "",
        dry_run: bool = False,
    ):
        self._registry = registry
        self._settings = settings
        self._artifacts_dir = artifacts_dir
        self._config_path = config_path
        self._operation_id = operation_id
        self._dry_run = dry_run

    # ── Rendering ───────────────────────────────────────────────

    def unit_name(self, project_name: str) -> str:
        return f"{self._settings.service.unit_prefix}{project_name}.service"

    def unit_path(self, project_name: str) -> Path:
        return self._settings.service.resolved_unit_dir() / self.unit_name(project_name)

    def render(self, project: Project, project_dir: Path) -> GeneratedFile:
        """Unit file content; identical inputs give identical output."""
        command = self._settings.procon_command or default_procon_command()
        exec_start = (
            f"{command} --config {shlex.quote(self._config_path)} "
            f"run-proxy {shlex.quote(project.name)}"
        )
        content = _UNIT_TEMPLATE.format(
            name=project.name,
            working_dir=project_dir,
            exec_start=exec_start,
            stop_timeout=int(self._settings.supervisor.stop_timeout_seconds) + 5,
            wanted_by="default.target" if self._settings.service.user else "multi-user.target",
        )
        return GeneratedFile(
            path=str(self.unit_path(project.name)),
            content=content,
            reason=f"service unit for {project.name}",
        )

    # ── Dispatch ────────────────────────────────────────────────

    def _do(self, project: str, label: str, adapter: str, params: dict) -> Receipt:
        prefix = f"{self._operation_id}:" if self._operation_id else ""
        action = Action(
            id=f"{prefix}{project}:daemon:{label}",
            name=f"daemon:{label}",
            adapter=adapter,
            project=project,
            params=params,
        )
        receipt = self._registry.execute_action(action, dry_run=self._dry_run)
        if receipt.failed:
            raise ReconcileFailure(project, f"daemon unit ({label})", receipt.error or "failed")
        logger.debug("%s:%s → %s", project, action.name, receipt.status)
        return receipt

    def _unit_file(self, project: str, label: str, params: dict) -> None:
        """Write or remove the installed unit file; left alone while systemd is faked."""
        if self._registry.is_mocked("systemd"):
            logger.info("systemd is faked; not touching %s", params["path"])
            return
        self._do(project, label, "filesystem", params)

    def _systemctl(self, project: str, operation: str, unit: str | None = None) -> Receipt:
        params = {"operation": operation}
        if unit:
            params["unit"] = unit
        return self._do(project, operation, "systemd", params)

    # ── Reconciliation ──────────────────────────────────────────

    def reconcile(self, project: Project, project_dir: Path) -> tuple[DaemonRef, bool]:
        """Bring the installed unit in line with the declaration.

        Returns:
            (reference to record in the snapshot, whether anything changed)
        """
        desired = self.render(project, project_dir)
        unit_path = Path(desired.path)
        current = unit_path.read_text(encoding="utf-8") if unit_path.is_file() else None
        changed = current != desired.content

        self._do(
            project.name,
            "artifact",
            "filesystem",
            {
                "operation": "write",
                "path": str(self._artifacts_dir / project.name / "daemon.service"),
                "content": desired.content,
            },
        )

        if changed:
            verb = "Installing" if current is None else "Updating"
            logger.info("%s unit %s", verb, unit_path.name)
            self._unit_file(
                project.name,
                "install",
                {"operation": "write", "path": str(unit_path), "content": desired.content},
            )
            self._systemctl(project.name, "daemon-reload")
            if project.service.autostart:
                self._systemctl(project.name, "enable", unit_path.name)
        else:
            logger.info("Unit %s unchanged", unit_path.name)

        ref = DaemonRef(
            unit_name=unit_path.name,
            unit_path=str(unit_path),
            content_hash=desired.content_hash,
        )
        return ref, changed

    def start(self, project: Project, ref: DaemonRef) -> None:
        """(Re)start the unit so it runs the freshly built project."""
        if not project.service.autostart:
            logger.info("Unit %s installed; autostart disabled", ref.unit_name)
            return
        self.restart(project.name, ref)

    def restart(self, project_name: str, ref: DaemonRef) -> None:
        self._systemctl(project_name, "restart", ref.unit_name)

    def stop(self, project_name: str, ref: DaemonRef) -> None:
        self._systemctl(project_name, "stop", ref.unit_name)

    def remove(self, project_name: str, ref: DaemonRef) -> None:
        """Stop, disable and delete the unit."""
        self._systemctl(project_name, "stop", ref.unit_name)
        self._systemctl(project_name, "disable", ref.unit_name)
        self._unit_file(project_name, "remove", {"operation": "remove", "path": ref.unit_path})
        self._systemctl(project_name, "daemon-reload")
        logger.info("Removed unit %s", ref.unit_name)

    def is_active(self, project_name: str, ref: DaemonRef) -> str:
        """Unit state as reported by systemctl is-active."""
        receipt = self._systemctl(project_name, "is-active", ref.unit_name)
        return str(receipt.metadata.get("active_state", "active" if receipt.ok else "unknown"))

    def stale_units(self, known: set[str]) -> list[Path]:
        """Unit files with procon's prefix that no snapshot entry owns."""
        unit_dir = self._settings.service.resolved_unit_dir()
        if not unit_dir.is_dir():
            return []
        prefix = self._settings.service.unit_prefix
        return sorted(
            p for p in unit_dir.glob(f"{prefix}*.service") if p.name not in known
        )

"""
Proxy config manager — one reverse-proxy site entry per exposed port.

The entry is a file in the proxy's include directory (``conf.d`` for
nginx, an imported directory for caddy). After any write or removal
the proxy is validated and then reloaded exactly once; a write that
fails validation is rolled back so one bad entry cannot take the
other sites down with it.

Entries left behind by an interrupted apply are not owned by any
snapshot entry; ``stale_entries`` lists them for plan and status.
While the proxy is faked (``--safe``) the include directory is never
written.
"""

from __future__ import annotations

import logging
from pathlib import Path

from procon.adapters.registry import AdapterRegistry
from procon.core.errors import ReconcileFailure
from procon.core.models.action import Action, Receipt
from procon.core.models.project import Project
from procon.core.models.settings import ProxySettings
from procon.core.models.state import ProxyRef
from procon.core.models.template import GeneratedFile

logger = logging.getLogger(__name__)


_NGINX_TEMPLATE = """\
# Generated by procon for project '{name}'. Changes will be overwritten.
server {{
    listen {listen};
    server_name {domain};

    location {path} {{
        proxy_pass http://127.0.0.1:{port};
        proxy_http_version 1.1;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
    }}
}}
"""

_CADDY_TEMPLATE = """\
# Generated by procon for project '{name}'. Changes will be overwritten.
{address} {{
    reverse_proxy {matcher}127.0.0.1:{port}
}}
"""


def server_name(project: Project) -> str:
    if project.proxy and project.proxy.domain:
        return project.proxy.domain
    return f"{project.name}.localhost"


class ProxyManager:
    """Install, update and remove proxy site entries."""

    def __init__(
        self,
        registry: AdapterRegistry,
        settings: ProxySettings,
        operation_id: str = "",
        dry_run: bool = False,
    ):
        self._registry = registry
        self._settings = settings
        self._operation_id = operation_id
        self._dry_run = dry_run

    def entry_path(self, project_name: str) -> Path:
        filename = f"{self._settings.file_prefix}{project_name}{self._settings.file_suffix}"
        return self._settings.resolved_sites_dir() / filename

    def render(self, project: Project) -> GeneratedFile:
        if project.port is None:
            raise ValueError(f"project '{project.name}' exposes no port")
        domain = server_name(project)
        path = project.proxy.path if project.proxy else "/"

        if self._settings.kind == "nginx":
            content = _NGINX_TEMPLATE.format(
                name=project.name,
                listen=self._settings.listen,
                domain=domain,
                path=path,
                port=project.port,
            )
        else:
            address = domain if self._settings.listen == 443 else f"http://{domain}:{self._settings.listen}"
            matcher = "" if path == "/" else f"{path.rstrip('/')}/* "
            content = _CADDY_TEMPLATE.format(
                name=project.name,
                address=address,
                matcher=matcher,
                port=project.port,
            )

        return GeneratedFile(
            path=str(self.entry_path(project.name)),
            content=content,
            reason=f"{self._settings.kind} site for {project.name}",
        )

    # ── Dispatch ────────────────────────────────────────────────

    def _do(self, project: str, label: str, adapter: str, params: dict) -> Receipt:
        prefix = f"{self._operation_id}:" if self._operation_id else ""
        action = Action(
            id=f"{prefix}{project}:proxy:{label}",
            name=f"proxy:{label}",
            adapter=adapter,
            project=project,
            params=params,
        )
        return self._registry.execute_action(action, dry_run=self._dry_run)

    def _entry_file(self, project: str, label: str, params: dict) -> Receipt:
        """Write or remove the site entry; left alone while the proxy is faked."""
        if self._registry.is_mocked("proxy"):
            logger.info("proxy is faked; not touching %s", params["path"])
            return Receipt.skip("filesystem", f"{project}:proxy:{label}", reason="proxy is faked")
        return self._do(project, label, "filesystem", params)

    def _require(self, receipt: Receipt, project: str, what: str) -> None:
        if receipt.failed:
            raise ReconcileFailure(project, f"proxy entry ({what})", receipt.error or "failed")

    def _reload(self, project: str) -> None:
        self._require(self._do(project, "reload", "proxy", {"operation": "reload"}), project, "reload")

    # ── Reconciliation ──────────────────────────────────────────

    def reconcile(self, project: Project) -> tuple[ProxyRef, bool]:
        """Write the entry if it differs, then validate and reload once."""
        desired = self.render(project)
        path = Path(desired.path)
        previous = path.read_text(encoding="utf-8") if path.is_file() else None
        changed = previous != desired.content

        if changed:
            self._require(
                self._entry_file(
                    project.name,
                    "write",
                    {"operation": "write", "path": str(path), "content": desired.content},
                ),
                project.name,
                "write",
            )
            check = self._do(project.name, "validate", "proxy", {"operation": "validate"})
            if check.failed:
                self._rollback(project.name, path, previous)
                raise ReconcileFailure(
                    project.name, "proxy entry (validate)", check.error or "invalid configuration"
                )
            self._reload(project.name)
            logger.info("Proxy entry %s %s", path.name, "installed" if previous is None else "updated")
        else:
            logger.info("Proxy entry %s unchanged", path.name)

        ref = ProxyRef(
            entry_path=str(path),
            content_hash=desired.content_hash,
            domain=server_name(project),
            port=project.port or 0,
        )
        return ref, changed

    def _rollback(self, project: str, path: Path, previous: str | None) -> None:
        if previous is None:
            params = {"operation": "remove", "path": str(path)}
        else:
            params = {"operation": "write", "path": str(path), "content": previous}
        receipt = self._entry_file(project, "rollback", params)
        if receipt.failed:
            logger.error("Could not roll back %s: %s", path, receipt.error)

    def remove(self, project_name: str, ref: ProxyRef) -> None:
        """Delete the entry and reload."""
        self._require(
            self._entry_file(project_name, "remove", {"operation": "remove", "path": ref.entry_path}),
            project_name,
            "remove",
        )
        self._reload(project_name)
        logger.info("Removed proxy entry %s", Path(ref.entry_path).name)

    def stale_entries(self, known: set[str]) -> list[Path]:
        """Entries with procon's prefix that no snapshot entry owns."""
        sites = self._settings.resolved_sites_dir()
        if not sites.is_dir():
            return []
        pattern = f"{self._settings.file_prefix}*{self._settings.file_suffix}"
        return sorted(p for p in sites.glob(pattern) if str(p) not in known)

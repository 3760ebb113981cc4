"""
Settings — how procon talks to the host.

Everything under the ``settings:`` key of procon.yml: where state
lives, which package manager installs dependencies, where service
units and proxy entries are written, and how the supervisor backs off.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class PackageManagerConfig(BaseModel):
    """Command templates for a package manager.

    ``{package}`` is replaced with the package name. ``check`` must exit
    0 when the package is already installed.
    """

    model_config = ConfigDict(extra="forbid")

    check: str
    install: str


# Built-in package managers. ``settings.package_managers`` may add or
# override entries.
BUILTIN_PACKAGE_MANAGERS: dict[str, PackageManagerConfig] = {
    "apt": PackageManagerConfig(
        check="dpkg -s {package}",
        install="apt-get install -y {package}",
    ),
    "dnf": PackageManagerConfig(
        check="rpm -q {package}",
        install="dnf install -y {package}",
    ),
    "pacman": PackageManagerConfig(
        check="pacman -Q {package}",
        install="pacman -S --noconfirm {package}",
    ),
    "brew": PackageManagerConfig(
        check="brew list {package}",
        install="brew install {package}",
    ),
    "nix": PackageManagerConfig(
        check="nix-env -q {package}",
        install="nix-env -iA nixpkgs.{package}",
    ),
}


class ServiceSettings(BaseModel):
    """Host service manager (systemd)."""

    model_config = ConfigDict(extra="forbid")

    user: bool = True                # systemctl --user
    unit_dir: str | None = None      # default depends on ``user``
    unit_prefix: str = "procon-proj-"

    def resolved_unit_dir(self) -> Path:
        if self.unit_dir:
            return Path(self.unit_dir).expanduser()
        if self.user:
            return Path.home() / ".config" / "systemd" / "user"
        return Path("/etc/systemd/system")


_PROXY_DEFAULTS = {
    "nginx": {
        "sites_dir": "/etc/nginx/conf.d",
        "reload": "nginx -s reload",
        "validate": "nginx -t",
    },
    "caddy": {
        "sites_dir": "/etc/caddy/sites",
        "reload": "caddy reload --config /etc/caddy/Caddyfile",
        "validate": "caddy validate --config /etc/caddy/Caddyfile",
    },
}


class ProxySettings(BaseModel):
    """Host reverse proxy."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["nginx", "caddy"] = "nginx"
    sites_dir: str | None = None
    listen: int = 80
    reload_command: str | None = None
    validate_command: str | None = None
    file_prefix: str = "procon-"

    def resolved_sites_dir(self) -> Path:
        return Path(self.sites_dir or _PROXY_DEFAULTS[self.kind]["sites_dir"]).expanduser()

    def resolved_reload_command(self) -> str:
        return self.reload_command or _PROXY_DEFAULTS[self.kind]["reload"]

    def resolved_validate_command(self) -> str:
        return self.validate_command or _PROXY_DEFAULTS[self.kind]["validate"]

    @property
    def file_suffix(self) -> str:
        return ".conf" if self.kind == "nginx" else ".caddy"


class SupervisorSettings(BaseModel):
    """Restart policy knobs for run-proxy."""

    model_config = ConfigDict(extra="forbid")

    max_restarts: int = Field(default=5, ge=0)
    backoff_seconds: float = Field(default=1.0, ge=0)
    max_backoff_seconds: float = Field(default=30.0, ge=0)
    healthy_after_seconds: float = Field(default=30.0, ge=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    stop_timeout_seconds: float = Field(default=10.0, ge=0)


class Settings(BaseModel):
    """Root of the ``settings:`` section."""

    model_config = ConfigDict(extra="forbid")

    state_dir: str = ".procon"
    package_manager: str = "apt"
    package_managers: dict[str, PackageManagerConfig] = Field(default_factory=dict)
    sudo: bool = False
    step_timeout: int = Field(default=1800, gt=0)
    max_workers: int | None = Field(default=None, ge=1)
    procon_command: str | None = None

    service: ServiceSettings = Field(default_factory=ServiceSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)

    def package_manager_config(self, name: str | None = None) -> PackageManagerConfig | None:
        """Look up a package manager by name (default: the configured one)."""
        name = name or self.package_manager
        if name in self.package_managers:
            return self.package_managers[name]
        return BUILTIN_PACKAGE_MANAGERS.get(name)

    @property
    def uses_nix(self) -> bool:
        return self.package_manager == "nix"

"""
Shared test fixtures and configuration.

Nothing here touches the real host: packages are "installed" by
touching files, unit and proxy directories live under tmp_path, and
systemctl / the proxy binary are replaced by MockAdapters.
"""

from pathlib import Path
from typing import Any

import pytest
import yaml

from procon.adapters.mock import MockAdapter
from procon.adapters.registry import AdapterRegistry, default_registry
from procon.core.config.loader import load_config
from procon.core.models.settings import Settings


def base_settings(root: Path) -> dict[str, Any]:
    """Settings that keep every host path inside ``root``."""
    return {
        "state_dir": ".procon",
        "package_manager": "fake",
        "package_managers": {
            "fake": {"check": "test -e {package}", "install": "touch {package}"},
        },
        "procon_command": "procon",
        "service": {"unit_dir": str(root / "units")},
        "proxy": {
            "sites_dir": str(root / "sites"),
            "validate_command": "true",
            "reload_command": "true",
        },
        "supervisor": {
            "max_restarts": 2,
            "backoff_seconds": 0.01,
            "max_backoff_seconds": 0.05,
            "healthy_after_seconds": 60,
            "poll_interval_seconds": 0.05,
            "stop_timeout_seconds": 2,
        },
    }


class FakeHost:
    """systemd and the reverse proxy, as mocks that record every call."""

    def __init__(self):
        self.systemd = MockAdapter("systemd")
        self.proxy = MockAdapter("proxy")

    def registry(self, settings: Settings) -> AdapterRegistry:
        registry = default_registry(settings)
        registry.register(self.systemd)
        registry.register(self.proxy)
        return registry

    def registry_for(self, config_path: Path) -> AdapterRegistry:
        return self.registry(load_config(config_path).settings)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in tmp_path."""
    return Settings.model_validate(base_settings(tmp_path))


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def write_config(tmp_path: Path):
    """Write a procon.yml into tmp_path and return its path.

    Calling it again overwrites the file, which is how tests edit
    the configuration between two applies.
    """

    def _write(
        projects: dict[str, Any] | None = None,
        tasks: dict[str, Any] | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Path:
        merged = base_settings(tmp_path)
        merged.update(settings or {})
        document: dict[str, Any] = {"settings": merged, "projects": projects or {}}
        if tasks:
            document["tasks"] = tasks
        path = tmp_path / "procon.yml"
        path.write_text(yaml.safe_dump(document, sort_keys=False))
        return path

    return _write

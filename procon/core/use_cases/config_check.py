"""
Config check use case — validate procon.yml and report issues.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from procon.core.config.loader import ConfigError, find_config_file, load_config
from procon.core.models.config import Config, collect_tasks


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    config: Config | None = None
    config_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "project_count": len(self.config.projects) if self.config else 0,
            "task_count": len(self.config.tasks) if self.config else 0,
        }


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate the configuration and report issues.

    Loading already rejects anything that cannot be applied (schema
    errors, unknown tasks, unbound placeholders). The checks here are
    warnings: legal, but probably not what was meant.
    """
    result = ConfigCheckResult()

    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        result.errors.append("No procon.yml found.")
        return result
    result.config_path = config_path

    try:
        config = load_config(config_path)
        result.config = config
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    if not config.projects:
        result.warnings.append("No projects defined. There is nothing to apply.")

    by_port: dict[int, list[str]] = defaultdict(list)
    for name, project in sorted(config.projects.items()):
        if not project.phases:
            result.warnings.append(f"Project '{name}' declares no phases.")
        if project.port is not None:
            by_port[project.port].append(name)
        if project.proxy is not None and project.port is None:
            result.warnings.append(f"Project '{name}' has a proxy section but no port; no entry will be written.")
        explicit_daemon = "daemon" in project.service.model_fields_set
        if explicit_daemon and project.service.daemon and not project.phases.get("start"):
            result.warnings.append(f"Project '{name}' is a daemon without a start phase.")
        origin = config.source_origin(project)
        if origin is not None:
            if not origin.exists():
                result.warnings.append(f"Project '{name}' source {origin} does not exist.")
        elif not config.project_dir(project).is_dir():
            result.warnings.append(
                f"Project '{name}' directory {config.project_dir(project)} does not exist yet."
            )

    for port, names in sorted(by_port.items()):
        if len(names) > 1:
            result.warnings.append(f"Port {port} is used by several projects: {', '.join(names)}")

    used = set()
    for project in config.projects.values():
        used.update(collect_tasks(project.task_refs(), config.tasks))
    for name in sorted(set(config.tasks) - used):
        result.warnings.append(f"Task '{name}' is not used by any project.")

    result.valid = True
    return result


def show_config(config_path: Path | None = None) -> dict[str, Any]:
    """The normalised configuration, as procon sees it.

    Raises:
        ConfigError: If the configuration does not load.
    """
    config = load_config(config_path)
    data = config.model_dump(mode="json", by_alias=True)
    data["source"] = config.source
    data["state_dir"] = str(config.state_dir)
    return data

"""
Configuration loader — reads procon.yml into domain models.

Reads YAML (or TOML), merges ``include:`` files, validates against the
Pydantic schemas, then resolves every phase of every project so that
template and task errors surface here, before anything executes.
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from procon.core.engine.templating import resolve_project
from procon.core.errors import ConfigError
from procon.core.models.config import Config

logger = logging.getLogger(__name__)

# Searched for in this order, in each directory walking up
CONFIG_FILES = ("procon.yml", "procon.yaml", "procon.toml")

__all__ = ["CONFIG_FILES", "ConfigError", "find_config_file", "load_config", "validate_config"]


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys.

    Plain safe_load keeps the last duplicate silently, which would hide
    a project declared twice in the same file.
    """

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _value_node in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key '{key}'",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for procon.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to the config file, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        for name in CONFIG_FILES:
            candidate = current / name
            if candidate.is_file():
                return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _read_document(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    if path.suffix == ".toml":
        try:
            data = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    else:
        try:
            data = yaml.load(raw, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}, got {type(data).__name__}")
    return data


def _merge_named(
    target: dict[str, Any],
    origins: dict[str, Path],
    entries: Any,
    kind: str,
    path: Path,
) -> None:
    if entries is None:
        return
    if not isinstance(entries, dict):
        raise ConfigError(f"'{kind}s' in {path} must be a mapping")
    for name, body in entries.items():
        name = str(name)
        if name in target:
            raise ConfigError(
                f"Duplicate {kind} '{name}' (declared in {origins[name]} and {path})"
            )
        target[name] = body
        origins[name] = path


def _merge_includes(data: dict[str, Any], root: Path, main: Path) -> dict[str, Any]:
    """Fold ``include:`` files into the main document.

    An included file either declares a single project (it has a
    ``name:``) or carries its own ``projects:`` / ``tasks:`` mappings.
    """
    projects: dict[str, Any] = {}
    tasks: dict[str, Any] = {}
    project_origins: dict[str, Path] = {}
    task_origins: dict[str, Path] = {}

    _merge_named(projects, project_origins, data.get("projects"), "project", main)
    _merge_named(tasks, task_origins, data.get("tasks"), "task", main)

    patterns = data.get("include") or []
    if isinstance(patterns, str):
        patterns = [patterns]

    for pattern in patterns:
        matches = sorted(p for p in root.glob(str(pattern)) if p.is_file())
        if not matches:
            logger.warning("include pattern '%s' matched no files", pattern)
        for path in matches:
            if path.resolve() == main.resolve():
                continue
            doc = _read_document(path)
            if "projects" in doc or "tasks" in doc:
                _merge_named(projects, project_origins, doc.get("projects"), "project", path)
                _merge_named(tasks, task_origins, doc.get("tasks"), "task", path)
            elif "name" in doc:
                name = str(doc["name"])
                _merge_named(projects, project_origins, {name: doc}, "project", path)
            else:
                raise ConfigError(
                    f"{path} declares neither a project ('name:') nor 'projects:'/'tasks:'"
                )
            logger.debug("Included %s", path)

    merged = dict(data)
    merged["projects"] = projects
    merged["tasks"] = tasks
    merged["include"] = [str(p) for p in patterns]
    return merged


def validate_config(config: Config) -> None:
    """Resolve every phase of every project.

    Raises:
        ConfigError: On the first unknown task, missing argument,
            recursive task, or unbound placeholder.
    """
    for name in sorted(config.projects):
        project = config.projects[name]
        try:
            resolve_project(project, config.tasks, config.project_dir(project))
        except ConfigError as e:
            raise ConfigError(f"project '{name}': {e}") from e


def load_config(path: Path | None = None) -> Config:
    """Load and validate the procon configuration.

    Args:
        path: Explicit path to procon.yml. If None, searches upward.

    Returns:
        Validated Config model, every phase already known to resolve.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(
            f"No {CONFIG_FILES[0]} found. Create one, or specify --config."
        )

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading config from %s", path)

    data = _read_document(path)
    data = _merge_includes(data, path.resolve().parent, path)

    try:
        config = Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    config.source = str(path.resolve())
    validate_config(config)

    logger.info(
        "Loaded %d project(s) and %d task(s) from %s",
        len(config.projects),
        len(config.tasks),
        path,
    )
    return config

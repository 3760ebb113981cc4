"""
Project model — what a managed project declares.

A project is a working directory plus named phases. Each phase is an
ordered list of steps, and a step is one of three kinds:

    run      shell command(s), optionally with a cwd and extra deps
    install  dependency install directive (idempotent)
    task     reference to a named Task with bound arguments

The raw configuration is forgiving (a bare string is a run step, a
single command may be given without a list); the validators below
normalise it into the tagged variant before pydantic sees it.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Fixed lifecycle vocabulary. Other lowercase names are custom phases.
LIFECYCLE_PHASES = ("setup", "update", "build", "start", "stop", "teardown")

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
PHASE_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")

_STEP_KINDS = ("run", "install", "task")


def _scalar(value: Any) -> str:
    """Render a YAML/TOML scalar the way a shell would expect it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        return [_scalar(value)]
    return value


def normalize_step(raw: Any) -> Any:
    """Turn the shorthand forms of a step into a tagged mapping."""
    if isinstance(raw, str):
        return {"kind": "run", "run": [raw]}
    if isinstance(raw, dict) and "kind" not in raw:
        present = [k for k in _STEP_KINDS if k in raw]
        if len(present) != 1:
            raise ValueError(
                "a step needs exactly one of 'run', 'install' or 'task', "
                f"got keys: {', '.join(sorted(raw)) or '(none)'}"
            )
        return {"kind": present[0], **raw}
    return raw


def normalize_steps(raw: Any) -> Any:
    if raw is None:
        return []
    if isinstance(raw, (str, dict)):
        raw = [raw]
    if isinstance(raw, list):
        return [normalize_step(s) for s in raw]
    return raw


# ── Step variants ───────────────────────────────────────────────


class RunStep(BaseModel):
    """Shell command(s) run in sequence in one working directory."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["run"] = "run"
    run: list[str] = Field(min_length=1)
    cwd: str | None = None
    deps: list[str] = Field(default_factory=list)
    timeout: int | None = Field(default=None, gt=0)

    @field_validator("run", "deps", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        return _as_list(value)


class InstallStep(BaseModel):
    """Install packages through the host package manager."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["install"] = "install"
    install: list[str] = Field(min_length=1)
    manager: str | None = None

    @field_validator("install", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        return _as_list(value)


class TaskStep(BaseModel):
    """Invoke a named Task.

    ``with`` binds arguments by name (mapping) or by position (list,
    matched against the task's declared ``args``).
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    kind: Literal["task"] = "task"
    task: str
    with_: dict[str, str] | list[str] = Field(default_factory=dict, alias="with")
    cwd: str | None = None

    @field_validator("with_", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): _scalar(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_scalar(v) for v in value]
        return [_scalar(value)]


Step = Annotated[RunStep | InstallStep | TaskStep, Field(discriminator="kind")]


# ── Tasks ───────────────────────────────────────────────────────


class Task(BaseModel):
    """A reusable, parameterized sequence of steps.

    Placeholders look like ``{{src}}``; every name used must be one of
    ``args`` (or a built-in such as ``{{project}}``).
    """

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    description: str = ""
    args: list[str] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)

    @field_validator("steps", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        return normalize_steps(value)


# ── Project ─────────────────────────────────────────────────────


class ServiceConfig(BaseModel):
    """How the start phase is run when the project is a daemon."""

    model_config = ConfigDict(extra="forbid")

    daemon: bool = True
    autostart: bool = True
    restart: Literal["never", "always", "on-failure"] = "on-failure"


class ProxyConfig(BaseModel):
    """Reverse-proxy entry for a project that exposes a port."""

    model_config = ConfigDict(extra="forbid")

    domain: str | None = None
    path: str = "/"


class SourceConfig(BaseModel):
    """Where the project's files come from when it is not run in place.

    ``path`` is a directory that is copied, ``zip`` an archive that is
    unpacked; either way into ``<state_dir>/artifacts/<name>/source``,
    which then becomes the project's working directory. A bare string
    is shorthand for ``path``.
    """

    model_config = ConfigDict(extra="forbid")

    path: str | None = None
    zip: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"path": data}
        return data

    @model_validator(mode="after")
    def _one_origin(self) -> SourceConfig:
        if (self.path is None) == (self.zip is None):
            raise ValueError("source needs exactly one of 'path' or 'zip'")
        return self

    @property
    def kind(self) -> str:
        return "path" if self.path is not None else "zip"

    @property
    def origin(self) -> str:
        return self.path if self.path is not None else str(self.zip)


class Project(BaseModel):
    """A managed project — loaded from procon.yml.

    Lifecycle phases may be given under ``phases:`` or directly as
    top-level keys (``build: make``); both end up in ``phases``.
    With a ``source``, ``dir`` is relative to the fetched copy.
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    dir: str = "."
    source: SourceConfig | None = None
    deps: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    port: int | None = Field(default=None, ge=1, le=65535)
    proxy: ProxyConfig | None = None
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    phases: dict[str, list[Step]] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _hoist_phases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        hoisted = [k for k in LIFECYCLE_PHASES if k in data]
        if not hoisted:
            return data
        data = dict(data)
        phases = dict(data.get("phases") or {})
        for key in hoisted:
            if key in phases:
                raise ValueError(f"phase '{key}' declared twice")
            phases[key] = data.pop(key)
        data["phases"] = phases
        return data

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not NAME_PATTERN.match(value):
            raise ValueError(f"invalid project name '{value}'")
        return value

    @field_validator("deps", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        return _as_list(value)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): _scalar(v) for k, v in value.items()}
        return value

    @field_validator("phases", mode="before")
    @classmethod
    def _normalize_phases(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        normalized = {}
        for phase, steps in value.items():
            if not PHASE_PATTERN.match(str(phase)):
                raise ValueError(f"invalid phase name '{phase}'")
            normalized[str(phase)] = normalize_steps(steps)
        return normalized

    def steps_for(self, phase: str) -> list[RunStep | InstallStep | TaskStep]:
        """Steps of a phase (empty when the phase is not declared)."""
        return list(self.phases.get(phase, []))

    @property
    def is_daemon(self) -> bool:
        """Whether the start phase is meant to run as a managed service."""
        return self.service.daemon and bool(self.phases.get("start"))

    @property
    def exposes_port(self) -> bool:
        return self.port is not None

    def task_refs(self) -> set[str]:
        """Names of tasks referenced directly by this project's steps."""
        return {
            step.task
            for steps in self.phases.values()
            for step in steps
            if isinstance(step, TaskStep)
        }

"""
Step resolution — expand tasks into concrete, fully bound steps.

Every phase is resolved before anything runs, so an unknown task, a
missing argument, or an unbound ``{{placeholder}}`` is a ConfigError
raised while nothing has been executed yet.

Resolution is lexical: a task sees its own arguments plus the
built-ins (``{{project}}``, ``{{project_dir}}``), never the arguments
of the task that invoked it. Argument values given in ``with`` are
themselves templates, evaluated in the caller's scope.

Output is a flat list of ResolvedStep: only ``run`` and ``install``
remain, each labelled with the chain of steps it came from, e.g.
``build[1] > copy[0]``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from procon.core.errors import ConfigError
from procon.core.models.config import resolve_path
from procon.core.models.project import InstallStep, Project, RunStep, Step, Task, TaskStep

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_-]*)\s*\}\}")

# Arbitrary, but a real configuration never nests this deep.
_MAX_DEPTH = 32


@dataclass(frozen=True)
class ResolvedStep:
    """A concrete step: nothing left to substitute."""

    kind: str                           # "run" | "install"
    origin: str                         # e.g. "build[1] > copy[0]"
    cwd: str
    commands: tuple[str, ...] = ()      # run: executed as one shell, joined by &&
    deps: tuple[str, ...] = ()          # run: packages required by this step
    timeout: int | None = None
    packages: tuple[str, ...] = ()      # install
    manager: str | None = None          # install: override package manager

    @property
    def command(self) -> str:
        return " && ".join(self.commands)

    @property
    def description(self) -> str:
        if self.kind == "install":
            return f"install {' '.join(self.packages)}"
        return self.command

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "origin": self.origin, "cwd": self.cwd}
        if self.kind == "run":
            data["command"] = self.command
            if self.deps:
                data["deps"] = list(self.deps)
            if self.timeout:
                data["timeout"] = self.timeout
        else:
            data["packages"] = list(self.packages)
            if self.manager:
                data["manager"] = self.manager
        return data


@dataclass
class _Scope:
    bindings: dict[str, str]
    builtins: dict[str, str]
    base_dir: Path
    chain: tuple[str, ...] = field(default_factory=tuple)


def placeholders(template: str) -> list[str]:
    """Names referenced by ``{{name}}`` in a template."""
    return PLACEHOLDER.findall(template)


def substitute(template: str, bindings: Mapping[str, str], origin: str = "") -> str:
    """Replace ``{{name}}`` placeholders with bound values.

    Raises:
        ConfigError: If the template uses a name that is not bound.
    """
    unbound = sorted({n for n in placeholders(template) if n not in bindings})
    if unbound:
        names = ", ".join("{{" + n + "}}" for n in unbound)
        where = f"{origin}: " if origin else ""
        raise ConfigError(f"{where}unbound placeholder {names} in '{template}'")
    return PLACEHOLDER.sub(lambda m: bindings[m.group(1)], template)


def bind_arguments(
    task: Task,
    given: Mapping[str, str] | list[str],
    scope: Mapping[str, str],
    origin: str,
) -> dict[str, str]:
    """Bind a task invocation's ``with`` to the task's declared args.

    Positional values are matched to ``args`` in order. Values are
    evaluated in the caller's ``scope``.
    """
    if isinstance(given, list):
        if len(given) > len(task.args):
            raise ConfigError(
                f"{origin}: task '{task.name}' takes {len(task.args)} argument(s), "
                f"got {len(given)}"
            )
        named = dict(zip(task.args, given))
    else:
        unknown = sorted(set(given) - set(task.args))
        if unknown:
            raise ConfigError(
                f"{origin}: task '{task.name}' has no argument(s) {', '.join(unknown)}"
            )
        named = dict(given)

    missing = [a for a in task.args if a not in named]
    if missing:
        raise ConfigError(
            f"{origin}: task '{task.name}' missing argument(s): {', '.join(missing)}"
        )
    return {name: substitute(value, scope, origin) for name, value in named.items()}


def resolve_steps(
    steps: list[Step],
    tasks: Mapping[str, Task],
    bindings: Mapping[str, str],
    base_dir: Path,
    prefix: str,
) -> list[ResolvedStep]:
    """Resolve a step list against ``bindings`` (which act as built-ins)."""
    scope = _Scope(bindings=dict(bindings), builtins=dict(bindings), base_dir=base_dir)
    return _resolve(steps, tasks, scope, prefix)


def resolve_phase(
    project: Project,
    phase: str,
    tasks: Mapping[str, Task],
    project_dir: Path,
) -> list[ResolvedStep]:
    """Resolve one phase of a project into concrete steps."""
    builtins = {"project": project.name, "project_dir": str(project_dir), "phase": phase}
    return resolve_steps(project.steps_for(phase), tasks, builtins, project_dir, phase)


def resolve_project(
    project: Project,
    tasks: Mapping[str, Task],
    project_dir: Path,
) -> dict[str, list[ResolvedStep]]:
    """Resolve every declared phase; raises on the first ConfigError."""
    return {
        phase: resolve_phase(project, phase, tasks, project_dir)
        for phase in project.phases
    }


def _resolve(
    steps: list[Step],
    tasks: Mapping[str, Task],
    scope: _Scope,
    prefix: str,
) -> list[ResolvedStep]:
    if len(scope.chain) > _MAX_DEPTH:
        raise ConfigError(f"{prefix}: tasks nested deeper than {_MAX_DEPTH} levels")

    resolved: list[ResolvedStep] = []
    for index, step in enumerate(steps):
        origin = f"{prefix}[{index}]"

        if isinstance(step, RunStep):
            cwd = _cwd(scope, step.cwd, origin)
            resolved.append(
                ResolvedStep(
                    kind="run",
                    origin=origin,
                    cwd=str(cwd),
                    commands=tuple(substitute(c, scope.bindings, origin) for c in step.run),
                    deps=tuple(substitute(d, scope.bindings, origin) for d in step.deps),
                    timeout=step.timeout,
                )
            )

        elif isinstance(step, InstallStep):
            resolved.append(
                ResolvedStep(
                    kind="install",
                    origin=origin,
                    cwd=str(scope.base_dir),
                    packages=tuple(substitute(p, scope.bindings, origin) for p in step.install),
                    manager=step.manager,
                )
            )

        elif isinstance(step, TaskStep):
            resolved.extend(_expand_task(step, tasks, scope, origin))

    return resolved


def _expand_task(
    step: TaskStep,
    tasks: Mapping[str, Task],
    scope: _Scope,
    origin: str,
) -> list[ResolvedStep]:
    task = tasks.get(step.task)
    if task is None:
        raise ConfigError(f"{origin}: unknown task '{step.task}'")
    if step.task in scope.chain:
        cycle = " -> ".join((*scope.chain, step.task))
        raise ConfigError(f"{origin}: recursive task reference {cycle}")

    args = bind_arguments(task, step.with_, scope.bindings, origin)
    inner = _Scope(
        bindings={**scope.builtins, **args},
        builtins=scope.builtins,
        base_dir=_cwd(scope, step.cwd, origin),
        chain=(*scope.chain, step.task),
    )
    return _resolve(task.steps, tasks, inner, f"{origin} > {step.task}")


def _cwd(scope: _Scope, raw: str | None, origin: str) -> Path:
    if not raw:
        return scope.base_dir
    return resolve_path(scope.base_dir, substitute(raw, scope.bindings, origin))

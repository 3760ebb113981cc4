"""
Error kinds — what can go wrong, and how far it reaches.

    ConfigError        whole invocation, before any step runs
    LockContention     whole invocation, before any step runs (retryable)
    StepFailure        one phase of one project
    ReconcileFailure   one phase of one project (daemon / proxy artifact)
    SupervisorFailure  run-proxy only, never plan/apply

Adapters never raise these. They return failed Receipts and the
engine converts them at the project boundary, where siblings are
isolated from each other.
"""

from __future__ import annotations


class ProconError(Exception):
    """Base class for every error procon raises on purpose."""

    retryable = False


class ConfigError(ProconError):
    """Configuration is malformed, incomplete, or inconsistent."""


class StepFailure(ProconError):
    """A step exited non-zero (or a dependency failed to install)."""

    def __init__(
        self,
        project: str,
        phase: str,
        step: str,
        output: str = "",
        exit_code: int | None = None,
    ):
        self.project = project
        self.phase = phase
        self.step = step
        self.output = output
        self.exit_code = exit_code
        detail = f" (exit {exit_code})" if exit_code is not None else ""
        message = f"{project}:{phase} step {step} failed{detail}"
        if output:
            message = f"{message}: {output}"
        super().__init__(message)


class ReconcileFailure(ProconError):
    """A generated artifact could not be installed, updated, or removed."""

    def __init__(self, project: str, artifact: str, error: str):
        self.project = project
        self.artifact = artifact
        self.error = error
        super().__init__(f"{project}: cannot reconcile {artifact}: {error}")


class SupervisorFailure(ProconError):
    """One or more supervised daemons exhausted their restart policy."""

    def __init__(self, daemons: list[str]):
        self.daemons = daemons
        super().__init__(f"Unhealthy daemons: {', '.join(daemons)}")


class LockContention(ProconError):
    """Another apply holds the state lock."""

    retryable = True

    def __init__(self, path: str, holder: str = ""):
        self.path = path
        self.holder = holder
        who = f" (held by pid {holder})" if holder else ""
        super().__init__(f"Apply in progress{who}: {path} is locked")

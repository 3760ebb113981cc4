"""
Adapter base — how the engine reaches the host.

Every side effect (a step's shell command, a package install, a unit
file write, systemctl, a proxy reload) is an Action handed to an
adapter through the registry. Adapters answer with Receipts and never
raise.

An adapter that takes an ``operation`` param declares its operations
and their required params in ``operations``; the default ``validate``
checks both, then calls ``check`` for anything adapter-specific.
"""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from procon.core.models.action import Action, Receipt


class ExecutionContext(BaseModel):
    """An action plus where and how to run it."""

    action: Action
    cwd: str = "."
    dry_run: bool = False
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def working_dir(self) -> str:
        """The action's own ``cwd`` param, else the registry default."""
        return self.params.get("cwd") or self.cwd

    @property
    def operation(self) -> str:
        return self.params.get("operation", "")

    def succeed(self, output: str = "", **metadata: Any) -> Receipt:
        return Receipt.success(self.action.adapter, self.action.id, output=output, metadata=metadata)

    def fail(self, error: str, **metadata: Any) -> Receipt:
        return Receipt.failure(self.action.adapter, self.action.id, error=error, metadata=metadata)

    def finished(
        self,
        result: subprocess.CompletedProcess,
        accept: tuple[int, ...] = (0,),
        **metadata: Any,
    ) -> Receipt:
        return Receipt.from_process(self.action.adapter, self.action.id, result, accept, **metadata)


class Adapter(ABC):
    """Base class for adapters.

    Subclasses provide ``name``, ``is_available`` and ``execute``, and
    either fill in ``operations`` or override ``validate``.
    """

    # operation -> params it requires; empty means "no operation param"
    operations: ClassVar[dict[str, tuple[str, ...]]] = {}

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry key ('shell', 'filesystem', 'packages', 'systemd', 'proxy')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the host tool behind this adapter is present. Never raises."""

    @abstractmethod
    def execute(self, context: ExecutionContext) -> Receipt:
        """Perform the action. Failures are receipts, not exceptions."""

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        """(ok, error). Runs before ``execute`` and also in dry-run."""
        if self.operations:
            operation = context.operation
            if operation not in self.operations:
                valid = ", ".join(sorted(self.operations))
                return False, f"Unknown operation '{operation}'. Valid: {valid}"
            for param in self.operations[operation]:
                if context.params.get(param) is None:
                    return False, f"Missing required param: '{param}'"
        error = self.check(context)
        return (not error, error)

    def check(self, context: ExecutionContext) -> str:
        """Adapter-specific validation; an error message, or ''."""
        return ""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"

"""
Step executor — run one phase of one project, step by step.

Steps come in already resolved (see templating), so everything here
is concrete. Each step becomes one Action dispatched through the
adapter registry; the first failed receipt stops the phase. Nothing
that already ran is undone — teardown is the compensating phase, and
it is only ever run on purpose.

Dependencies:
    project ``deps``   installed once, before the phase's first step
    step ``deps``      installed right before that step
With the nix package manager neither is installed: run steps are
wrapped in ``nix-shell -p`` with the union of both lists instead.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from procon.adapters.registry import AdapterRegistry
from procon.core.engine.templating import ResolvedStep
from procon.core.errors import StepFailure
from procon.core.models.action import Action, Receipt
from procon.core.models.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """Where and for whom a phase runs."""

    project: str
    phase: str
    project_dir: Path
    operation_id: str = ""
    env: dict[str, str] = field(default_factory=dict)
    deps: list[str] = field(default_factory=list)
    dry_run: bool = False
    cancel: threading.Event | None = None

    @property
    def environment(self) -> dict[str, str]:
        return {
            **self.env,
            "PROCON_PROJECT": self.project,
            "PROCON_PROJECT_DIR": str(self.project_dir),
            "PROCON_PHASE": self.phase,
        }


@dataclass
class PhaseResult:
    """Outcome of running one phase."""

    project: str
    phase: str
    receipts: list[Receipt] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    exit_code: int | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failed_step is None and not self.cancelled

    @property
    def steps_run(self) -> int:
        return len(self.receipts)

    def raise_for_failure(self) -> None:
        """Raise StepFailure if a step failed."""
        if self.failed_step is not None:
            raise StepFailure(
                project=self.project,
                phase=self.phase,
                step=self.failed_step,
                output=self.error or "",
                exit_code=self.exit_code,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "phase": self.phase,
            "ok": self.ok,
            "cancelled": self.cancelled,
            "failed_step": self.failed_step,
            "error": self.error,
            "exit_code": self.exit_code,
            "receipts": [r.model_dump(mode="json") for r in self.receipts],
        }


class StepExecutor:
    """Turns resolved steps into Actions and runs them in order."""

    def __init__(self, registry: AdapterRegistry, settings: Settings):
        self._registry = registry
        self._settings = settings

    def _action_id(self, context: StepContext, label: str) -> str:
        prefix = f"{context.operation_id}:" if context.operation_id else ""
        return f"{prefix}{context.project}:{context.phase}:{label}"

    def _install_action(
        self,
        context: StepContext,
        label: str,
        packages: list[str],
        cwd: str,
        manager: str | None = None,
    ) -> Action:
        return Action(
            id=self._action_id(context, label),
            name=label,
            adapter="packages",
            project=context.project,
            phase=context.phase,
            params={"packages": packages, "manager": manager, "cwd": cwd},
        )

    def build_actions(self, steps: list[ResolvedStep], context: StepContext) -> list[Action]:
        """The exact actions ``run`` would dispatch, in order."""
        if not steps:
            return []

        nix = self._settings.uses_nix
        actions: list[Action] = []

        if context.deps and not nix:
            actions.append(
                self._install_action(context, "deps", list(context.deps), str(context.project_dir))
            )

        for step in steps:
            if step.kind == "install":
                actions.append(
                    self._install_action(
                        context, step.origin, list(step.packages), step.cwd, step.manager
                    )
                )
                continue

            packages = list(step.deps)
            if packages and not nix:
                actions.append(
                    self._install_action(context, f"{step.origin}.deps", packages, step.cwd)
                )
            params: dict[str, Any] = {
                "command": step.command,
                "cwd": step.cwd,
                "env": context.environment,
                "timeout": step.timeout or self._settings.step_timeout,
            }
            if nix:
                params["nix"] = True
                params["packages"] = list(dict.fromkeys([*context.deps, *packages]))
            actions.append(
                Action(
                    id=self._action_id(context, step.origin),
                    name=step.origin,
                    adapter="shell",
                    project=context.project,
                    phase=context.phase,
                    params=params,
                )
            )
        return actions

    def run(self, steps: list[ResolvedStep], context: StepContext) -> PhaseResult:
        """Execute steps strictly in order; stop at the first failure."""
        result = PhaseResult(project=context.project, phase=context.phase)

        for action in self.build_actions(steps, context):
            if context.cancel is not None and context.cancel.is_set():
                result.cancelled = True
                result.error = "cancelled"
                logger.info("⊘ %s:%s cancelled before %s", context.project, context.phase, action.name)
                return result

            receipt = self._registry.execute_action(
                action,
                cwd=str(context.project_dir),
                dry_run=context.dry_run,
            )
            result.receipts.append(receipt)

            status_marker = "✓" if receipt.ok else "✗" if receipt.failed else "⊘"
            logger.info(
                "%s %s:%s %s → %s",
                status_marker,
                context.project,
                context.phase,
                action.name,
                receipt.status,
            )

            if receipt.failed:
                result.failed_step = action.name
                result.error = receipt.error
                result.exit_code = receipt.return_code
                return result

        return result

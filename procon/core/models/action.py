"""
Action and Receipt — what the engine asks for, and what it gets back.

An Action names an adapter and carries its params. Whatever happens,
the adapter answers with a Receipt; a non-zero exit, a missing file
or a timeout is a ``failed`` receipt, never an exception.
"""

from __future__ import annotations

import subprocess
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class Action(BaseModel):
    """One side effect: a step's command, a file write, a systemctl call.

    ``id`` is ``<operation>:<project>:<phase>:<index>`` for steps and
    ``<operation>:<project>:<artifact>:<label>`` for artifacts, so any
    receipt leads back to what produced it.
    """

    id: str
    name: str = ""                  # step origin, e.g. "build[1] > copy[0]"
    adapter: str
    params: dict[str, Any] = Field(default_factory=dict)
    project: str | None = None
    phase: str | None = None


class Receipt(BaseModel):
    """How an Action ended."""

    adapter: str
    action_id: str
    status: Literal["ok", "skipped", "failed"] = "ok"
    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0
    output: str = ""
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def return_code(self) -> int | None:
        """Exit status of the process behind this receipt, if any."""
        return self.metadata.get("return_code")

    @classmethod
    def success(cls, adapter: str, action_id: str, output: str = "", **kwargs: Any) -> Receipt:
        return cls(adapter=adapter, action_id=action_id, output=output, **kwargs)

    @classmethod
    def failure(cls, adapter: str, action_id: str, error: str, **kwargs: Any) -> Receipt:
        return cls(adapter=adapter, action_id=action_id, status="failed", error=error, **kwargs)

    @classmethod
    def skip(cls, adapter: str, action_id: str, reason: str = "", **kwargs: Any) -> Receipt:
        return cls(adapter=adapter, action_id=action_id, status="skipped", output=reason, **kwargs)

    @classmethod
    def from_process(
        cls,
        adapter: str,
        action_id: str,
        result: subprocess.CompletedProcess,
        accept: tuple[int, ...] = (0,),
        **metadata: Any,
    ) -> Receipt:
        """Receipt for a finished process.

        Exit codes in ``accept`` succeed. A failure reports stderr,
        falling back to stdout, then to the bare exit status; stdout is
        kept in metadata so nothing the step printed is lost.
        """
        stdout = (result.stdout or "").strip()
        stderr = (result.stderr or "").strip()
        metadata["return_code"] = result.returncode
        if result.returncode in accept:
            metadata["stderr"] = stderr
            return cls.success(adapter, action_id, output=stdout, metadata=metadata)
        metadata["stdout"] = stdout
        return cls.failure(
            adapter,
            action_id,
            error=stderr or stdout or f"exited with code {result.returncode}",
            metadata=metadata,
        )

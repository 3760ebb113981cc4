"""
Mock adapter — a recording stand-in for systemd, the proxy, or any
other adapter a test must not let loose on the host.

It answers every action with success unless scripted otherwise, by
exact action id or by ``operation`` param.
"""

from __future__ import annotations

from procon.adapters.base import Adapter, ExecutionContext
from procon.core.models.action import Receipt


class MockAdapter(Adapter):
    def __init__(self, adapter_name: str = "mock", available: bool = True,
                 default_output: str = "[mock] executed"):
        self._name = adapter_name
        self._available = available
        self._default_output = default_output
        self._responses: dict[str, Receipt] = {}
        self._operation_failures: dict[str, str] = {}
        self.call_log: list[ExecutionContext] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_count(self) -> int:
        return len(self.call_log)

    @property
    def operations(self) -> list[str]:
        """``operation`` of every call so far, in order."""
        return [ctx.operation for ctx in self.call_log]

    def is_available(self) -> bool:
        return self._available

    def set_response(self, action_id: str, receipt: Receipt) -> None:
        self._responses[action_id] = receipt

    def set_failure(self, action_id: str, error: str = "Mock failure") -> None:
        self._responses[action_id] = Receipt.failure(self._name, action_id, error=error)

    def fail_operation(self, operation: str, error: str = "Mock failure") -> None:
        """Fail every call whose ``operation`` param is ``operation``."""
        self._operation_failures[operation] = error

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        self.call_log.append(context)
        action_id = context.action.id
        if action_id in self._responses:
            return self._responses[action_id]
        if context.operation in self._operation_failures:
            return Receipt.failure(self._name, action_id, error=self._operation_failures[context.operation])
        return Receipt.success(self._name, action_id, output=self._default_output, metadata={"mock": True})

    def reset(self) -> None:
        """Forget calls and scripted responses."""
        self.call_log.clear()
        self._responses.clear()
        self._operation_failures.clear()

"""
Adapter registry — the one door from the engine to the host.

``execute_action`` looks up the adapter for an Action, validates it,
honours dry-run, runs it and stamps the duration on the receipt. An
adapter that raises anyway is turned into a failed receipt here, so
callers only ever see receipts.

Faking:
    mock_mode   every action succeeds without touching anything
                (``--mock``), or goes to a custom stand-in adapter
    mocked      only the named adapters are faked; ``--safe`` fakes
                systemd and the proxy but still runs project steps
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Any

from procon.adapters.base import Adapter, ExecutionContext
from procon.core.models.action import Action, Receipt
from procon.core.models.settings import Settings

logger = logging.getLogger(__name__)

HOST_SERVICE_ADAPTERS = ("systemd", "proxy")


class AdapterRegistry:
    """Adapters by name, plus the dispatch rules above."""

    def __init__(self, mock_mode: bool = False, mocked: Iterable[str] = ()):
        self._adapters: dict[str, Adapter] = {}
        self._mock_mode = mock_mode
        self._mock_adapter: Adapter | None = None
        self._mocked = set(mocked)

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    def set_mock_mode(self, enabled: bool, mock_adapter: Adapter | None = None) -> None:
        """Fake everything; with ``mock_adapter``, route every action to it."""
        self._mock_mode = enabled
        self._mock_adapter = mock_adapter

    def mock(self, *names: str) -> None:
        self._mocked.update(names)

    def is_mocked(self, name: str) -> bool:
        return self._mock_mode or name in self._mocked

    def register(self, adapter: Adapter) -> None:
        """Add ``adapter``, replacing any adapter of the same name."""
        if adapter.name in self._adapters:
            logger.debug("Replacing adapter %s with %r", adapter.name, adapter)
        self._adapters[adapter.name] = adapter

    def unregister(self, name: str) -> None:
        self._adapters.pop(name, None)

    def get(self, name: str) -> Adapter | None:
        return self._adapters.get(name)

    def list_adapters(self) -> list[str]:
        return list(self._adapters)

    def adapter_status(self) -> dict[str, dict[str, Any]]:
        """Availability of every registered adapter."""
        status = {}
        for name, adapter in self._adapters.items():
            try:
                available = adapter.is_available()
            except Exception:
                available = False
            status[name] = {
                "name": name,
                "available": available,
                "mocked": self.is_mocked(name),
                "type": type(adapter).__name__,
            }
        return status

    def _resolve(self, action: Action) -> Adapter | Receipt:
        if self._mock_mode and self._mock_adapter is not None:
            return self._mock_adapter
        if self.is_mocked(action.adapter):
            return Receipt.success(
                action.adapter,
                action.id,
                output=f"[mock] {action.adapter}:{action.name or action.id}",
                metadata={"mock": True},
            )
        adapter = self._adapters.get(action.adapter)
        if adapter is None:
            return Receipt.failure(action.adapter, action.id, error=f"No adapter registered for '{action.adapter}'")
        return adapter

    def execute_action(self, action: Action, cwd: str = ".", dry_run: bool = False) -> Receipt:
        """Run ``action`` and return its receipt; never raises.

        Args:
            action: What to do.
            cwd: Working directory when the action has no ``cwd`` param.
            dry_run: Validate only; answer with a skipped receipt.
        """
        started = time.monotonic()
        resolved = self._resolve(action)
        if isinstance(resolved, Receipt):
            return resolved

        context = ExecutionContext(action=action, cwd=cwd, dry_run=dry_run, params=action.params)
        try:
            valid, error = resolved.validate(context)
        except Exception as e:
            valid, error = False, f"validator raised {e!r}"
        if not valid:
            return context.fail(f"Validation failed: {error}")

        if dry_run:
            return Receipt.skip(
                action.adapter,
                action.id,
                reason=f"[dry-run] {action.adapter}: {action.name or action.id}",
                metadata={"dry_run": True},
            )

        try:
            receipt = resolved.execute(context)
        except Exception as e:
            logger.error("Adapter %s raised on %s: %s", action.adapter, action.id, e)
            receipt = context.fail(f"Unexpected error: {e}")
        receipt.duration_ms = int((time.monotonic() - started) * 1000)
        return receipt


def default_registry(settings: Settings, mock_mode: bool = False, safe_mode: bool = False) -> AdapterRegistry:
    """Every adapter procon uses, configured from ``settings``.

    Args:
        settings: The ``settings:`` section.
        mock_mode: Fake every adapter (``--mock``).
        safe_mode: Fake systemd and the proxy only (``--safe``).
    """
    from procon.adapters.packages import PackageAdapter
    from procon.adapters.proxy import ProxyAdapter
    from procon.adapters.shell.command import ShellCommandAdapter
    from procon.adapters.shell.filesystem import FilesystemAdapter
    from procon.adapters.systemd import SystemdAdapter

    registry = AdapterRegistry(mock_mode=mock_mode, mocked=HOST_SERVICE_ADAPTERS if safe_mode else ())
    for adapter in (
        ShellCommandAdapter(default_timeout=settings.step_timeout),
        FilesystemAdapter(),
        PackageAdapter(settings),
        SystemdAdapter(user=settings.service.user),
        ProxyAdapter(settings.proxy),
    ):
        registry.register(adapter)
    return registry

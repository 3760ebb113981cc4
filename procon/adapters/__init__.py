"""Adapters — bindings to the host tools procon drives.

Public re-exports for convenient access.
"""

from procon.adapters.base import Adapter, ExecutionContext
from procon.adapters.mock import MockAdapter
from procon.adapters.registry import AdapterRegistry, default_registry

__all__ = [
    "Adapter",
    "AdapterRegistry",
    "ExecutionContext",
    "MockAdapter",
    "default_registry",
]

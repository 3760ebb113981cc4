"""
Domain models — Pydantic types for procon.

All models are re-exported here for convenient access:

    from procon.core.models import Config, Project, Task, AppliedSnapshot
"""

from procon.core.models.action import Action, Receipt
from procon.core.models.config import Config
from procon.core.models.project import (
    LIFECYCLE_PHASES,
    InstallStep,
    Project,
    ProxyConfig,
    RunStep,
    ServiceConfig,
    SourceConfig,
    Step,
    Task,
    TaskStep,
)
from procon.core.models.settings import (
    PackageManagerConfig,
    ProxySettings,
    ServiceSettings,
    Settings,
    SupervisorSettings,
)
from procon.core.models.state import (
    AppliedSnapshot,
    DaemonRef,
    OperationRecord,
    ProxyRef,
    SnapshotEntry,
)
from procon.core.models.template import GeneratedFile

__all__ = [
    "LIFECYCLE_PHASES",
    # action.py
    "Action",
    # state.py
    "AppliedSnapshot",
    # config.py
    "Config",
    "DaemonRef",
    # template.py
    "GeneratedFile",
    # project.py
    "InstallStep",
    "OperationRecord",
    # settings.py
    "PackageManagerConfig",
    "Project",
    "ProxyConfig",
    "ProxyRef",
    "ProxySettings",
    "Receipt",
    "RunStep",
    "ServiceConfig",
    "SourceConfig",
    "ServiceSettings",
    "Settings",
    "SnapshotEntry",
    "Step",
    "SupervisorSettings",
    "Task",
    "TaskStep",
]

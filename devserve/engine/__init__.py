"""devserve engine: per-worktree dev server orchestration."""
from .models import (
    OperationResult,
    PackageManager,
    ServerEntry,
    ServerState,
    StartCommand,
)
from .config import DevServerConfig, EventCallback, fire_event
from .errors import (
    DevServerError,
    EarlyProcessFailureError,
    InvalidWorktreePathError,
    ManifestNotFoundError,
    NoPortsAvailableError,
    NotRunningError,
    UnresolvableStartCommandError,
    WorktreeNotFoundError,
)

__all__ = [
    # Registry (lazy import)
    "DevServerRegistry",
    # Components (lazy import)
    "PortAllocator",
    "OutputPipeline",
    "ProcessSupervisor",
    # Models
    "OperationResult",
    "PackageManager",
    "ServerEntry",
    "ServerState",
    "StartCommand",
    # Config
    "DevServerConfig",
    "EventCallback",
    "fire_event",
    # YAML config (lazy import)
    "load_yaml_config",
    # Errors
    "DevServerError",
    "EarlyProcessFailureError",
    "InvalidWorktreePathError",
    "ManifestNotFoundError",
    "NoPortsAvailableError",
    "NotRunningError",
    "UnresolvableStartCommandError",
    "WorktreeNotFoundError",
]


def __getattr__(name: str):
    if name == "DevServerRegistry":
        from .registry import DevServerRegistry
        return DevServerRegistry
    if name == "PortAllocator":
        from .port_allocator import PortAllocator
        return PortAllocator
    if name == "OutputPipeline":
        from .output_pipeline import OutputPipeline
        return OutputPipeline
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

from epicflow.state.backends import (
    EpicflowStateError,
    JsonFileBackend,
    MemoryBackend,
    create_backend,
)
from epicflow.state.store import (
    DependencyCycleError,
    DuplicateTaskError,
    EpicNotFoundError,
    TaskNotFoundError,
    TaskStore,
)

__all__ = [
    "DependencyCycleError",
    "DuplicateTaskError",
    "EpicNotFoundError",
    "EpicflowStateError",
    "JsonFileBackend",
    "MemoryBackend",
    "TaskNotFoundError",
    "TaskStore",
    "create_backend",
]

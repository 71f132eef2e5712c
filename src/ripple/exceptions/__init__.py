from ._graph_exceptions import CycleError, GraphDefinitionError, UnknownNodeError
from ._manifest_exceptions import ManifestPersistenceError
from ._action_exceptions import (
    ActionSkipped,
    FingerprintUnavailableError,
    NodeActionError,
)

__all__ = [
    "CycleError",
    "GraphDefinitionError",
    "UnknownNodeError",
    "ManifestPersistenceError",
    "ActionSkipped",
    "FingerprintUnavailableError",
    "NodeActionError",
]

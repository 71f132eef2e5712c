__version__ = "0.3.0"

from .exceptions import (
    CycleError,
    GraphDefinitionError,
    UnknownNodeError,
)

__all__ = [
    "__version__",
    "CycleError",
    "GraphDefinitionError",
    "UnknownNodeError",
]

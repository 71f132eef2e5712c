from typing import Iterable, List


class CycleError(Exception):
    """
    Exception raised when an ordering operation finds a cycle in the graph.

    Attributes:
        cycle_path: Closed path of node ids forming the cycle; the first and
            last entries are the same node.
    """

    def __init__(self, cycle_path: List[str], message: str = None) -> None:
        self.cycle_path = list(cycle_path)
        if message is None:
            message = "dependency cycle detected: " + " → ".join(self.cycle_path)
        super().__init__(message)
        self.message = message


class UnknownNodeError(Exception):
    """Raised when an operation references node ids that are not in the graph."""

    def __init__(self, node_ids: Iterable[str]) -> None:
        self.node_ids = sorted(node_ids)
        if len(self.node_ids) == 1:
            message = f"unknown node: {self.node_ids[0]}"
        else:
            message = f"unknown nodes: {', '.join(self.node_ids)}"
        super().__init__(message)
        self.message = message


class GraphDefinitionError(ValueError):
    """
    Exception raised when a graph definition file is malformed.

    Attributes:
        errors: Every problem found while parsing the definition
    """

    def __init__(self, source: str, errors: List[str]) -> None:
        self.source = source
        self.errors = list(errors)
        details = "\n".join(f"  - {error}" for error in self.errors)
        message = f"Invalid graph definition {source}:\n{details}"
        super().__init__(message)
        self.message = message

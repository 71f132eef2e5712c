from typing import Optional


class FingerprintUnavailableError(Exception):
    """Raised when a materialized node's current fingerprint cannot be read."""

    def __init__(self, node: str, reason: str = "") -> None:
        self.node = node
        self.reason = reason
        message = f"cannot read fingerprint of {node}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NodeActionError(Exception):
    """
    Raised by an action when processing a single node fails.

    Attributes:
        node: Node the action ran for
        output: Combined stdout/stderr captured from the action, if any
        exit_code: Process exit code, when the action ran a subprocess
    """

    def __init__(
        self,
        node: str,
        message: str,
        output: str = "",
        exit_code: Optional[int] = None,
    ) -> None:
        self.node = node
        self.output = output or ""
        self.exit_code = exit_code
        super().__init__(message)
        self.message = message


class ActionSkipped(Exception):
    """Raised by an action when a node has nothing to process (e.g. no build file)."""

    def __init__(self, node: str, reason: str = "") -> None:
        self.node = node
        self.reason = reason
        super().__init__(reason or f"{node} skipped")

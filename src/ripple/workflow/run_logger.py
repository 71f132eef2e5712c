"""
Log file writers for build runs.

Two kinds of files land in the logs directory (``~/.ripple/logs`` by default):

- ``<node>.log``: raw output of a node's last failed action, overwritten on
  every failure of that node.
- ``run_<run_id>.log``: per-run report listing every failed node. Only
  created when at least one node fails, unless verbose mode is on.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def node_log_path(logs_dir: Path, node_id: str) -> Path:
    """Path of the per-node output log."""
    return Path(logs_dir) / f"{node_id}.log"


def write_node_log(logs_dir: Path, node_id: str, output: str) -> Optional[Path]:
    """Write a node's captured action output to ``<logs_dir>/<node>.log``.

    A write failure is logged and ignored; it never fails the build.

    Returns:
        Path of the written file, or None if it couldn't be written
    """
    path = node_log_path(logs_dir, node_id)
    header = (
        f"=== Build log for {node_id} ===\n"
        f"=== {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ===\n\n"
    )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(header + (output or ""), encoding="utf-8")
    except OSError as e:
        logger.warning("Could not write build log for %s: %s", node_id, e)
        return None
    return path


@dataclass
class NodeLogEntry:
    """A single node's execution log entry."""
    node_id: str
    status: str
    layer: int = 0
    duration_seconds: float = 0.0
    error_message: Optional[str] = None
    output_log: Optional[str] = None
    attempt: int = 1


class RunLogger:
    """Collects node results across retry rounds and writes a run report.

    Args:
        logs_dir: Directory the report is written to.
        run_id: Unique run identifier (timestamp-based).
        phase: Phase being executed (build, clone).
        verbose: If True, log all nodes; if False, log only failures.
        flags: CLI flags used for this run (for header display).
    """

    def __init__(
        self,
        logs_dir: Path,
        run_id: str,
        phase: str,
        verbose: bool = False,
        flags: Optional[List[str]] = None,
    ):
        self.logs_dir = Path(logs_dir)
        self.run_id = run_id
        self.phase = phase
        self.verbose = verbose
        self.flags = flags or []
        self._entries: List[NodeLogEntry] = []
        self._start_time = time.time()

    def log_node(
        self,
        node_id: str,
        status: str,
        layer: int = 0,
        duration_seconds: float = 0.0,
        error_message: Optional[str] = None,
        output_log: Optional[str] = None,
        attempt: int = 1,
    ) -> None:
        """Record a node's execution result."""
        self._entries.append(NodeLogEntry(
            node_id=node_id,
            status=status,
            layer=layer,
            duration_seconds=duration_seconds,
            error_message=error_message,
            output_log=output_log,
            attempt=attempt,
        ))

    @property
    def entries(self) -> List[NodeLogEntry]:
        return list(self._entries)

    @property
    def has_failures(self) -> bool:
        return any(e.status.upper() == "FAILED" for e in self._entries)

    @property
    def log_path(self) -> Path:
        return self.logs_dir / f"run_{self.run_id}.log"

    def write(self) -> Optional[Path]:
        """Write the run report if conditions are met.

        Returns the path to the written log file, or None if no file was written.
        """
        if not self.verbose and not self.has_failures:
            return None

        lines: List[str] = []
        lines.append("=== Ripple Run Log ===")
        lines.append(f"Run ID:    {self.run_id}")
        lines.append(f"Phase:     {self.phase}")
        lines.append(f"Started:   {datetime.fromtimestamp(self._start_time).isoformat()}")
        if self.flags:
            lines.append(f"Flags:     {' '.join(self.flags)}")
        lines.append("")

        entries = self._entries if self.verbose else [
            e for e in self._entries if e.status.upper() == "FAILED"
        ]

        for entry in entries:
            lines.append(
                f"--- {entry.node_id} [{entry.status.upper()}] "
                f"(layer {entry.layer}, attempt {entry.attempt}) ---"
            )
            lines.append(f"Duration:  {entry.duration_seconds:.2f}s")
            if entry.error_message:
                lines.append(f"Error:     {entry.error_message}")
            if entry.output_log:
                lines.append("")
                lines.append("Output:")
                for line in entry.output_log.splitlines():
                    lines.append(f"  {line}")
            lines.append("")

        total = len(self._entries)
        failed = sum(1 for e in self._entries if e.status.upper() == "FAILED")
        skipped = sum(1 for e in self._entries if e.status.upper() == "SKIPPED")
        succeeded = sum(1 for e in self._entries if e.status.upper() == "SUCCESS")

        lines.append("=== Summary ===")
        lines.append(
            f"Total: {total} | Succeeded: {succeeded} | Skipped: {skipped} | Failed: {failed}"
        )
        lines.append(f"Duration: {time.time() - self._start_time:.2f}s")

        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            self.log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write run log %s: %s", self.log_path, e)
            return None
        return self.log_path

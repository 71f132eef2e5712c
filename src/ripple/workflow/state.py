"""
Persistent build state for Ripple.

This module provides the build manifest: a versioned, on-disk record of the
processing state of every node, kept per phase (clone, build).

Key features:
- Per-node, per-phase status with last error, fingerprint and attempt time
- Fingerprint recorded at last success drives change detection
- Whole-document writes through a temp file and rename
- Tolerant loading: missing fields get defaults, unknown fields are ignored
- Migration of the v1 build/setup manifest formats
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ripple.exceptions import ManifestPersistenceError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
MANIFEST_FILE = "build-manifest.json"


class PhaseStatus(Enum):
    """Status of one phase of a node."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class Phase(str, Enum):
    """Processing phases tracked in the manifest."""
    CLONE = "clone"
    BUILD = "build"


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class PhaseState:
    """
    State of a single (node, phase) pair.

    Attributes:
        status: One of the PhaseStatus values
        error: Error text of the last failed attempt (empty otherwise)
        fingerprint: Fingerprint recorded at the last successful attempt
        last_attempt: ISO timestamp of the last attempt
    """
    status: str = PhaseStatus.PENDING.value
    error: str = ""
    fingerprint: str = ""
    last_attempt: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status}
        if self.error:
            d["error"] = self.error
        if self.fingerprint:
            d["fingerprint"] = self.fingerprint
        if self.last_attempt:
            d["last_attempt"] = self.last_attempt
        return d

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PhaseState":
        if not data:
            return cls()
        status = data.get("status", PhaseStatus.PENDING.value)
        if status not in {s.value for s in PhaseStatus}:
            status = PhaseStatus.PENDING.value
        return cls(
            status=status,
            error=data.get("error", "") or "",
            fingerprint=data.get("fingerprint", "") or "",
            last_attempt=data.get("last_attempt", "") or "",
        )

    def is_success(self) -> bool:
        return self.status == PhaseStatus.SUCCESS.value

    def is_failed(self) -> bool:
        return self.status == PhaseStatus.FAILED.value

    def is_pending(self) -> bool:
        return self.status == PhaseStatus.PENDING.value

    def is_done(self) -> bool:
        """Success or skipped: nothing left to do for this phase."""
        return self.status in (PhaseStatus.SUCCESS.value, PhaseStatus.SKIPPED.value)


@dataclass
class NodeState:
    """Processing state of one node, keyed by phase name."""
    phases: Dict[str, PhaseState] = field(default_factory=dict)

    def phase(self, phase: str) -> PhaseState:
        """Get the state of a phase, creating a pending entry if absent."""
        key = _phase_key(phase)
        if key not in self.phases:
            self.phases[key] = PhaseState()
        return self.phases[key]

    def get(self, phase: str) -> Optional[PhaseState]:
        return self.phases.get(_phase_key(phase))

    def to_dict(self) -> Dict[str, Any]:
        return {"phases": {name: ps.to_dict() for name, ps in self.phases.items()}}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NodeState":
        phases = (data or {}).get("phases", {}) or {}
        return cls(phases={
            str(name): PhaseState.from_dict(ps)
            for name, ps in phases.items()
            if isinstance(ps, dict)
        })


def _phase_key(phase: Any) -> str:
    return phase.value if isinstance(phase, Enum) else str(phase)


def _phase_settings(data: Any) -> Dict[str, Dict[str, Any]]:
    """Per-phase settings; a flat mapping from older manifests belongs to the build phase."""
    if not isinstance(data, dict) or not data:
        return {}
    if all(isinstance(v, dict) for v in data.values()):
        return {str(k): dict(v) for k, v in data.items()}
    return {Phase.BUILD.value: dict(data)}


@dataclass
class PhaseSummary:
    """Counts of nodes per outcome for one phase."""
    total: int = 0
    ok: int = 0
    failed: int = 0
    pending: int = 0


@dataclass
class Manifest:
    """
    Build manifest persisted between invocations.

    Attributes:
        schema_version: Manifest schema version
        created_at: ISO timestamp of creation
        updated_at: ISO timestamp of the last save
        completed_at: ISO timestamp set after a pass finished without failures
        settings: Per-phase snapshot of the run options, reused when an
            interrupted run is resumed without explicit options
        nodes: Mapping of node id -> NodeState
    """
    schema_version: int = SCHEMA_VERSION
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    completed_at: Optional[str] = None
    settings: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    nodes: Dict[str, NodeState] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Node access
    # ------------------------------------------------------------------

    def node(self, node_id: str) -> NodeState:
        """Get the state of a node, creating it if absent."""
        if node_id not in self.nodes:
            self.nodes[node_id] = NodeState()
        return self.nodes[node_id]

    def phase_state(self, node_id: str, phase: str) -> Optional[PhaseState]:
        """Get the recorded state of a (node, phase) pair without creating it."""
        state = self.nodes.get(node_id)
        return state.get(phase) if state else None

    def ensure_nodes(self, node_ids: Iterable[str], phases: Iterable[str]) -> None:
        """Pre-populate pending entries for every node and phase."""
        phases = list(phases)
        for node_id in node_ids:
            state = self.node(node_id)
            for phase in phases:
                state.phase(phase)

    def fingerprint_of(self, node_id: str, phase: str = Phase.BUILD) -> str:
        """Fingerprint recorded at the node's last success, or "" if unknown."""
        ps = self.phase_state(node_id, phase)
        return ps.fingerprint if ps else ""

    def is_succeeded_at(self, node_id: str, phase: str, fingerprint: Optional[str]) -> bool:
        """Check whether the phase already succeeded for exactly this fingerprint."""
        ps = self.phase_state(node_id, phase)
        if ps is None or not ps.is_success() or fingerprint is None:
            return False
        return ps.fingerprint == fingerprint

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def mark_phase(
        self,
        node_id: str,
        phase: str,
        error: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> None:
        """
        Record the outcome of an attempt.

        A success clears the error and records ``fingerprint``. A failure
        records the error text and keeps the fingerprint of the last success,
        so the node still reads as changed on the next run.

        Args:
            node_id: Node identifier
            phase: Phase name
            error: Error text; None means success
            fingerprint: Fingerprint the success was produced from
        """
        ps = self.node(node_id).phase(phase)
        ps.last_attempt = _now()
        if error is None:
            ps.status = PhaseStatus.SUCCESS.value
            ps.error = ""
            ps.fingerprint = fingerprint or ""
        else:
            ps.status = PhaseStatus.FAILED.value
            ps.error = error or "unknown error"

    def mark_skipped(self, node_id: str, phase: str) -> None:
        """Record that the phase had nothing to do for a node."""
        ps = self.node(node_id).phase(phase)
        ps.status = PhaseStatus.SKIPPED.value
        ps.error = ""
        ps.last_attempt = _now()

    def mark_pending(self, node_ids: Iterable[str], phase: str) -> None:
        """Flag nodes as scheduled. Their last-success fingerprint is kept."""
        for node_id in node_ids:
            ps = self.node(node_id).phase(phase)
            ps.status = PhaseStatus.PENDING.value
            ps.error = ""
        self.completed_at = None

    def settings_for(self, phase: str) -> Dict[str, Any]:
        """Options recorded by the last run of a phase."""
        return dict(self.settings.get(_phase_key(phase)) or {})

    def save_settings(self, phase: str, options: Dict[str, Any]) -> None:
        self.settings[_phase_key(phase)] = dict(options)

    def mark_complete(self) -> None:
        self.completed_at = _now()

    def reset_failed(self) -> List[str]:
        """
        Move every failed phase back to pending.

        Successful and skipped phases are left untouched. Clears the
        completion marker.

        Returns:
            Sorted ids of the nodes that had at least one failed phase
        """
        reset: set = set()
        for node_id, state in self.nodes.items():
            for ps in state.phases.values():
                if ps.is_failed():
                    ps.status = PhaseStatus.PENDING.value
                    ps.error = ""
                    reset.add(node_id)
        self.completed_at = None
        return sorted(reset)

    def reset_all(self) -> None:
        """Move every phase of every node back to pending and forget fingerprints."""
        for state in self.nodes.values():
            for ps in state.phases.values():
                ps.status = PhaseStatus.PENDING.value
                ps.error = ""
                ps.fingerprint = ""
        self.completed_at = None
        self.created_at = _now()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _select(self, phase: str, statuses: Iterable[str]) -> List[str]:
        wanted = set(statuses)
        return sorted(
            node_id for node_id, state in self.nodes.items()
            if (state.get(phase) or PhaseState()).status in wanted
        )

    def pending(self, phase: str) -> List[str]:
        """Nodes whose phase still has to run (pending or failed)."""
        return self._select(phase, (PhaseStatus.PENDING.value, PhaseStatus.FAILED.value))

    def failed(self, phase: str) -> List[str]:
        return self._select(phase, (PhaseStatus.FAILED.value,))

    def succeeded(self, phase: str) -> List[str]:
        """Nodes whose phase is done (success or skipped)."""
        return self._select(phase, (PhaseStatus.SUCCESS.value, PhaseStatus.SKIPPED.value))

    def is_complete(self, required_phases: Iterable[str] = (Phase.BUILD,)) -> bool:
        """
        Check whether every node is done with every required phase.

        Also requires the completion marker, which the orchestrator only sets
        after a pass without failures.
        """
        required = [_phase_key(p) for p in required_phases]
        for state in self.nodes.values():
            for phase in required:
                ps = state.get(phase)
                if ps is None or not ps.is_done():
                    return False
        return self.completed_at is not None

    def summary(self, phase: str) -> PhaseSummary:
        s = PhaseSummary(total=len(self.nodes))
        for state in self.nodes.values():
            ps = state.get(phase) or PhaseState()
            if ps.is_done():
                s.ok += 1
            elif ps.is_failed():
                s.failed += 1
            else:
                s.pending += 1
        return s

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d: Dict[str, Any] = {
            "schema_version": self.schema_version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.completed_at:
            d["completed_at"] = self.completed_at
        d["settings"] = self.settings
        d["nodes"] = {node_id: state.to_dict() for node_id, state in self.nodes.items()}
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        """Create from dictionary for JSON deserialization.

        Handles backward compatibility:
        - v1 build manifest: {version: 1, updated_at, repos: {name: {last_build_sha, status, error}}}
        - v1 setup manifest: {version: 1, started_at, repos: {name: {clone_status, install_status, ...}}}
        - v2 format: {schema_version: 2, nodes: {name: {phases: {...}}}}
        """
        if "nodes" not in data and "repos" in data:
            return cls._from_v1(data)

        nodes = {
            str(node_id): NodeState.from_dict(node_data)
            for node_id, node_data in (data.get("nodes") or {}).items()
            if isinstance(node_data, dict)
        }
        settings = _phase_settings(data.get("settings"))
        return cls(
            schema_version=SCHEMA_VERSION,
            created_at=data.get("created_at") or _now(),
            updated_at=data.get("updated_at") or _now(),
            completed_at=data.get("completed_at"),
            settings=settings,
            nodes=nodes,
        )

    @classmethod
    def _from_v1(cls, data: Dict[str, Any]) -> "Manifest":
        nodes: Dict[str, NodeState] = {}
        for name, repo in (data.get("repos") or {}).items():
            if not isinstance(repo, dict):
                continue
            state = NodeState()
            if "last_build_sha" in repo:
                # old build manifest: a single build phase
                build = PhaseState.from_dict(repo)
                build.last_attempt = repo.get("last_build_time", "") or ""
                if build.is_success():
                    build.fingerprint = repo.get("last_build_sha", "") or ""
                state.phases[Phase.BUILD.value] = build
            if "clone_status" in repo or "install_status" in repo:
                # old setup manifest: clone + install phases
                sha = repo.get("commit_sha", "") or ""
                attempt = repo.get("last_attempt", "") or ""
                clone = PhaseState.from_dict({
                    "status": repo.get("clone_status"),
                    "error": repo.get("clone_error"),
                    "last_attempt": attempt,
                })
                if clone.is_done():
                    clone.fingerprint = sha
                build = PhaseState.from_dict({
                    "status": repo.get("install_status"),
                    "error": repo.get("install_error"),
                    "last_attempt": attempt,
                })
                state.phases[Phase.CLONE.value] = clone
                state.phases.setdefault(Phase.BUILD.value, build)
            nodes[str(name)] = state

        settings: Dict[str, Dict[str, Any]] = {}
        if "skip_tests" in data:
            settings[Phase.BUILD.value] = {"skip_tests": bool(data["skip_tests"])}
        created = data.get("started_at") or data.get("updated_at") or _now()
        return cls(
            schema_version=SCHEMA_VERSION,
            created_at=created,
            updated_at=data.get("updated_at") or created,
            completed_at=data.get("completed_at"),
            settings=settings,
            nodes=nodes,
        )

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> "Manifest":
        data = json.loads(json_str)
        if not isinstance(data, dict):
            raise ValueError("manifest document must be a JSON object")
        return cls.from_dict(data)

    @classmethod
    def load_or_new(cls, path: Path) -> "Manifest":
        """
        Load a manifest, degrading to a fresh one when it can't be read.

        A missing file is normal (first run). An unreadable or corrupt file is
        logged as a warning and treated as "no prior state".
        """
        try:
            return load_manifest(path)
        except ManifestPersistenceError as e:
            logger.warning("%s; starting from an empty manifest", e)
            return cls()


def save_manifest(manifest: Manifest, path: Path) -> None:
    """
    Save the manifest, overwriting the whole document.

    Writes to a temporary file first and renames it over the target so an
    interrupted write leaves the previous snapshot in place.

    Args:
        manifest: Manifest to save
        path: Target file (typically ~/.ripple/build-manifest.json)

    Raises:
        ManifestPersistenceError: If the write fails
    """
    path = Path(path)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        manifest.updated_at = _now()
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(manifest.to_json())
        temp_path.replace(path)
    except OSError as e:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                logger.debug("Could not remove temporary manifest %s", temp_path)
        raise ManifestPersistenceError(f"Failed to save manifest to {path}: {e}") from e


def load_manifest(path: Path) -> Manifest:
    """
    Load the manifest from disk.

    Args:
        path: Manifest file path

    Returns:
        The stored Manifest, or a fresh empty one if the file does not exist

    Raises:
        ManifestPersistenceError: If the file exists but can't be read or parsed
    """
    path = Path(path)
    if not path.exists():
        return Manifest()

    try:
        with open(path, "r", encoding="utf-8") as f:
            return Manifest.from_json(f.read())
    except (json.JSONDecodeError, ValueError) as e:
        raise ManifestPersistenceError(f"Invalid manifest file {path}: {e}") from e
    except OSError as e:
        raise ManifestPersistenceError(f"Failed to load manifest from {path}: {e}") from e

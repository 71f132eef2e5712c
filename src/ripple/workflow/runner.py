"""
Layered execution of build actions.

This module provides the orchestration core that:
- Decides per node whether to run, from manifest state, live fingerprint,
  force flag and filter scope (``plan_node`` / ``plan_layers``)
- Executes layers sequentially, one node at a time
- Updates and persists the manifest after every node
- Writes a build log for every failed node and keeps going
- Retries failed nodes in rounds until they pass or the user stops
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from ripple.dag.graph import Graph
from ripple.exceptions import (
    ActionSkipped,
    FingerprintUnavailableError,
    ManifestPersistenceError,
    NodeActionError,
)
from ripple.workflow.change import detect_changes, transitive_closure
from ripple.workflow.run_logger import RunLogger, write_node_log
from ripple.workflow.state import Manifest, Phase, save_manifest
from ripple.workflow.workspace import Action

logger = logging.getLogger(__name__)

StartCallback = Callable[[int, str, int, int], None]
DoneCallback = Callable[[int, str, int, int, "NodeResult"], None]


class ExecutionStatus(Enum):
    """Outcome of a node in a pass."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(Enum):
    """Outcome of a whole run."""
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UP_TO_DATE = "up_to_date"


# skip reasons
REASON_NOT_SELECTED = "not selected"
REASON_UP_TO_DATE = "up to date"


@dataclass(slots=True)
class NodeResult:
    """Result of processing a single node."""
    node_id: str
    status: ExecutionStatus
    layer: int = 0
    duration: float = 0.0
    error_message: Optional[str] = None
    output: str = ""
    reason: str = ""
    log_path: Optional[Path] = None

    @property
    def ran(self) -> bool:
        """Whether the action was actually invoked."""
        return self.reason not in (REASON_NOT_SELECTED, REASON_UP_TO_DATE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "layer": self.layer,
            "duration": self.duration,
            "error_message": self.error_message,
            "reason": self.reason,
            "log_path": str(self.log_path) if self.log_path else None,
        }


@dataclass(frozen=True)
class NodeDecision:
    """Scheduling decision for one node of a plan.

    Attributes:
        node: Node id
        layer: 0-based layer index
        position: 1-based position across the whole plan
        total: Number of nodes in the plan
        run: Whether the action will be invoked
        reason: Why the node runs or is skipped
    """
    node: str
    layer: int
    position: int
    total: int
    run: bool
    reason: str


@dataclass
class ExecutionPlan:
    """Decisions for every node of a set of layers, plus the fingerprints read."""
    layers: List[List[str]]
    decisions: List[NodeDecision]
    fingerprints: Dict[str, Optional[str]] = field(default_factory=dict)
    changed: Set[str] = field(default_factory=set)

    @property
    def to_run(self) -> List[str]:
        return [d.node for d in self.decisions if d.run]

    @property
    def to_skip(self) -> List[str]:
        return [d.node for d in self.decisions if not d.run]


def plan_node(
    node_id: str,
    layer: int,
    position: int,
    total: int,
    manifest: Manifest,
    phase: str,
    fingerprint: Optional[str],
    force: bool = False,
    node_filter: Optional[Set[str]] = None,
    rebuild: Optional[Set[str]] = None,
) -> NodeDecision:
    """
    Decide whether a node runs. Pure: reads the manifest, never mutates it.

    Args:
        node_id: Node to decide for
        layer: Layer index of the node
        position: 1-based position in the plan
        total: Plan size
        manifest: Manifest to read state from
        phase: Phase being executed
        fingerprint: Live fingerprint of the node, None if unreadable
        force: Run even when already successful at this fingerprint
        node_filter: When given, only these nodes may run
        rebuild: Nodes that must run because a dependency is rebuilt

    Returns:
        NodeDecision
    """
    def decide(run: bool, reason: str) -> NodeDecision:
        return NodeDecision(node_id, layer, position, total, run, reason)

    if node_filter is not None and node_id not in node_filter:
        return decide(False, REASON_NOT_SELECTED)

    if force:
        return decide(True, "forced")

    if rebuild and node_id in rebuild:
        return decide(True, "dependency changed")

    if manifest.is_succeeded_at(node_id, phase, fingerprint):
        return decide(False, REASON_UP_TO_DATE)

    ps = manifest.phase_state(node_id, phase)
    if ps is not None and ps.is_failed():
        return decide(True, "previously failed")
    if ps is None or not ps.fingerprint:
        return decide(True, "never built")
    if ps.is_pending():
        return decide(True, "unfinished")
    return decide(True, "changed")


def plan_layers(
    layers: Sequence[Sequence[str]],
    manifest: Manifest,
    phase: str,
    fingerprints: Mapping[str, Optional[str]],
    force: bool = False,
    node_filter: Optional[Set[str]] = None,
    rebuild: Optional[Set[str]] = None,
) -> List[NodeDecision]:
    """Plan every node of ``layers`` in layer order (see ``plan_node``)."""
    total = sum(len(layer) for layer in layers)
    decisions: List[NodeDecision] = []
    position = 0
    for layer_idx, layer in enumerate(layers):
        for node_id in layer:
            position += 1
            decisions.append(plan_node(
                node_id,
                layer_idx,
                position,
                total,
                manifest,
                phase,
                fingerprints.get(node_id),
                force=force,
                node_filter=node_filter,
                rebuild=rebuild,
            ))
    return decisions


class LayeredExecutor:
    """
    Runs an action over layers of nodes, one node at a time.

    Every outcome is written to the manifest and persisted before the next
    node starts, so an interrupted run can be resumed. A failing node never
    stops the pass; downstream nodes are still attempted.

    Args:
        manifest: Manifest to read and update
        action: Callable ``action(node_id, options) -> output``
        workspace: Source of live fingerprints (``head_fingerprint``); when
            None, fingerprints are unknown and successes record none
        manifest_path: Where to persist the manifest; None keeps it in memory
        phase: Phase name recorded in the manifest
        logs_dir: Directory for per-node failure logs; None disables them
        on_start: Called as ``on_start(layer, node, position, total)``
        on_done: Called as ``on_done(layer, node, position, total, result)``
        strict_persistence: Raise when the manifest can't be saved instead
            of logging a warning
    """

    def __init__(
        self,
        manifest: Manifest,
        action: Action,
        workspace: Optional[Any] = None,
        manifest_path: Optional[Path] = None,
        phase: str = Phase.BUILD.value,
        logs_dir: Optional[Path] = None,
        on_start: Optional[StartCallback] = None,
        on_done: Optional[DoneCallback] = None,
        strict_persistence: bool = False,
    ):
        self.manifest = manifest
        self.action = action
        self.workspace = workspace
        self.manifest_path = Path(manifest_path) if manifest_path else None
        self.phase = phase.value if isinstance(phase, Enum) else phase
        self.logs_dir = Path(logs_dir) if logs_dir else None
        self.on_start = on_start
        self.on_done = on_done
        self.strict_persistence = strict_persistence

    def read_fingerprint(self, node_id: str) -> Optional[str]:
        """Live fingerprint of a node, or None when it can't be read."""
        if self.workspace is None:
            return None
        try:
            if not self.workspace.exists(node_id):
                return None
            return self.workspace.head_fingerprint(node_id)
        except (FingerprintUnavailableError, OSError) as e:
            logger.debug("No fingerprint for %s: %s", node_id, e)
            return None

    def plan(
        self,
        layers: Sequence[Sequence[str]],
        node_filter: Optional[Set[str]] = None,
        force: bool = False,
        rebuild: Optional[Set[str]] = None,
    ) -> ExecutionPlan:
        """Read fingerprints and compute the decision for every node."""
        layers = [list(layer) for layer in layers]
        fingerprints = {
            node_id: self.read_fingerprint(node_id)
            for layer in layers
            for node_id in layer
        }
        decisions = plan_layers(
            layers,
            self.manifest,
            self.phase,
            fingerprints,
            force=force,
            node_filter=node_filter,
            rebuild=rebuild,
        )
        return ExecutionPlan(layers=layers, decisions=decisions, fingerprints=fingerprints)

    def execute(
        self,
        layers: Sequence[Sequence[str]],
        node_filter: Optional[Set[str]] = None,
        force: bool = False,
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[NodeResult]:
        """
        Plan and run one pass over ``layers``.

        Args:
            layers: Node ids grouped in dependency layers
            node_filter: Restrict execution to these nodes; the rest are
                reported as skipped without touching the manifest
            force: Run nodes even when already successful at their fingerprint
            options: Passed through to the action

        Returns:
            One NodeResult per node, in plan order
        """
        return self.run_plan(self.plan(layers, node_filter=node_filter, force=force), options)

    def run_plan(
        self,
        plan: ExecutionPlan,
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[NodeResult]:
        """Run a precomputed plan (see ``plan``)."""
        options = dict(options or {})
        results: List[NodeResult] = []

        for decision in plan.decisions:
            if not decision.run:
                logger.debug("Skipping %s (%s)", decision.node, decision.reason)
                results.append(NodeResult(
                    node_id=decision.node,
                    status=ExecutionStatus.SKIPPED,
                    layer=decision.layer,
                    reason=decision.reason,
                ))
                continue

            results.append(
                self._run_node(decision, plan.fingerprints.get(decision.node), options)
            )

        return results

    def _run_node(
        self,
        decision: NodeDecision,
        fingerprint: Optional[str],
        options: Dict[str, Any],
    ) -> NodeResult:
        node_id = decision.node
        if self.on_start:
            self.on_start(decision.layer, node_id, decision.position, decision.total)

        logger.info("[%d/%d] %s %s", decision.position, decision.total, self.phase, node_id)
        start = time.time()
        result = NodeResult(node_id=node_id, status=ExecutionStatus.SUCCESS, layer=decision.layer)

        try:
            result.output = self.action(node_id, options) or ""
        except ActionSkipped as e:
            result.status = ExecutionStatus.SKIPPED
            result.reason = e.reason or "nothing to do"
            self.manifest.mark_skipped(node_id, self.phase)
        except NodeActionError as e:
            result.status = ExecutionStatus.FAILED
            result.error_message = e.message
            result.output = e.output
        except Exception as e:
            # unexpected action errors count as node failures
            logger.exception("Action for %s raised an unexpected error", node_id)
            result.status = ExecutionStatus.FAILED
            result.error_message = f"{type(e).__name__}: {e}"

        result.duration = time.time() - start

        if result.status == ExecutionStatus.SUCCESS:
            if fingerprint is None:
                fingerprint = self.read_fingerprint(node_id)
            self.manifest.mark_phase(node_id, self.phase, fingerprint=fingerprint)
        elif result.status == ExecutionStatus.FAILED:
            self.manifest.mark_phase(node_id, self.phase, error=result.error_message)
            logger.warning("%s failed: %s", node_id, result.error_message)
            if self.logs_dir is not None:
                result.log_path = write_node_log(self.logs_dir, node_id, result.output)

        self.persist()

        if self.on_done:
            self.on_done(decision.layer, node_id, decision.position, decision.total, result)
        return result

    def persist(self) -> None:
        """Save the manifest if a path is configured.

        Raises:
            ManifestPersistenceError: Only when ``strict_persistence`` is set
        """
        if self.manifest_path is None:
            return
        try:
            save_manifest(self.manifest, self.manifest_path)
        except ManifestPersistenceError as e:
            if self.strict_persistence:
                raise
            logger.warning("%s; continuing with in-memory state", e)


@dataclass
class Selection:
    """Which nodes a run covers and why.

    Attributes:
        changed: Nodes whose fingerprint moved since their last success
        unfinished: Nodes left pending or failed by an earlier run
        affected: Seeds (changed + unfinished) and their transitive dependents
        rebuild: Affected nodes that depend on another affected node
        layers: Layers of the affected subgraph
    """
    changed: Set[str] = field(default_factory=set)
    unfinished: Set[str] = field(default_factory=set)
    affected: Set[str] = field(default_factory=set)
    rebuild: Set[str] = field(default_factory=set)
    layers: List[List[str]] = field(default_factory=list)


@dataclass
class RunReport:
    """Summary of an orchestrated run."""
    status: RunStatus
    phase: str
    selection: Selection = field(default_factory=Selection)
    results: List[NodeResult] = field(default_factory=list)
    rounds: int = 0
    duration: float = 0.0

    def _count(self, status: ExecutionStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(ExecutionStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(ExecutionStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(ExecutionStatus.SKIPPED)

    @property
    def failed_nodes(self) -> List[str]:
        return [r.node_id for r in self.results if r.status == ExecutionStatus.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "phase": self.phase,
            "changed": sorted(self.selection.changed),
            "affected": sorted(self.selection.affected),
            "layers": self.selection.layers,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "rounds": self.rounds,
            "duration": self.duration,
            "results": [r.to_dict() for r in self.results],
        }


class BuildOrchestrator:
    """
    Drives a full run: select nodes, plan, confirm, execute, retry.

    Example:
        orchestrator = BuildOrchestrator(graph, executor, confirm_retry=ask)
        report = orchestrator.run(targets=["utils"])

    Args:
        graph: Dependency graph
        executor: LayeredExecutor holding the manifest, action and phase
        confirm_plan: Called with the ExecutionPlan before anything runs;
            returning False cancels the run
        confirm_retry: Called with the failed node ids after a pass with
            failures; returning True retries them
        max_retry_rounds: Upper bound on retry rounds
        run_logger: Optional RunLogger receiving every executed result
    """

    def __init__(
        self,
        graph: Graph,
        executor: LayeredExecutor,
        confirm_plan: Optional[Callable[[ExecutionPlan], bool]] = None,
        confirm_retry: Optional[Callable[[List[str]], bool]] = None,
        max_retry_rounds: int = 3,
        run_logger: Optional[RunLogger] = None,
    ):
        self.graph = graph
        self.executor = executor
        self.confirm_plan = confirm_plan
        self.confirm_retry = confirm_retry
        self.max_retry_rounds = max_retry_rounds
        self.run_logger = run_logger

    @property
    def manifest(self) -> Manifest:
        return self.executor.manifest

    def select(
        self,
        targets: Optional[Sequence[str]] = None,
        build_all: bool = False,
    ) -> Selection:
        """
        Compute the changed set, the affected set and its layers.

        Nodes an earlier run left pending or failed are seeds too, so an
        interrupted or partially failed run is picked up where it stopped.
        Targets narrow the affected set to themselves and their transitive
        dependents. With ``build_all`` that scope (or the whole graph) is
        selected regardless of changes.

        Raises:
            UnknownNodeError: If a target is not in the graph
            CycleError: If the selected subgraph contains a cycle
        """
        phase = self.executor.phase
        if self.executor.workspace is not None:
            changed = detect_changes(self.graph, self.executor.workspace, self.manifest, phase)
        else:
            changed = set(self.graph.nodes)

        unfinished = {
            node_id for node_id in self.manifest.pending(phase)
            if node_id in self.graph
        }
        seeds = changed | unfinished

        if build_all:
            affected = set(self.graph.nodes)
        else:
            affected = transitive_closure(self.graph, seeds)

        if targets:
            self.graph.require(targets)
            affected &= transitive_closure(self.graph, targets)

        rebuild: Set[str] = set()
        if not build_all:
            rebuild = {
                node_id for node_id in affected
                if any(dep in affected for dep in self.graph.transitive_dependencies_of(node_id))
            }
        layers = self.graph.subgraph(affected).layers()
        return Selection(
            changed=changed,
            unfinished=unfinished,
            affected=affected,
            rebuild=rebuild,
            layers=layers,
        )

    def run(
        self,
        targets: Optional[Sequence[str]] = None,
        build_all: bool = False,
        force: Optional[bool] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> RunReport:
        """
        Run the selected nodes, retrying failures while ``confirm_retry`` agrees.

        Args:
            targets: Restrict to these nodes and their dependents
            build_all: Select every node instead of the affected set
            force: Re-run nodes already successful at their fingerprint;
                defaults to ``build_all``
            options: Passed to the action and snapshotted in the manifest.
                When omitted and an earlier run was left unfinished, the
                options recorded by that run are reused

        Returns:
            RunReport with the last outcome of every selected node
        """
        start = time.time()
        phase = self.executor.phase
        force = build_all if force is None else force

        selection = self.select(targets=targets, build_all=build_all)

        if options is None and selection.unfinished:
            options = self.manifest.settings_for(phase)
            if options:
                logger.info("Resuming %s with saved settings: %s", phase, options)
        options = dict(options or {})

        if not selection.affected:
            logger.info("Nothing to %s, everything is up to date", phase)
            return RunReport(status=RunStatus.UP_TO_DATE, phase=phase, selection=selection)

        plan = self.executor.plan(selection.layers, force=force, rebuild=selection.rebuild)
        plan.changed = set(selection.changed)
        if self.confirm_plan is not None and not self.confirm_plan(plan):
            logger.info("Run cancelled before execution")
            return RunReport(status=RunStatus.CANCELLED, phase=phase, selection=selection)

        # nodes about to run stay pending until they finish, so a crash resumes them
        self.manifest.save_settings(phase, options)
        self.manifest.mark_pending(plan.to_run, phase)
        self.executor.persist()

        final: Dict[str, NodeResult] = {}
        results = self.executor.run_plan(plan, options)
        self._record(results, final, attempt=1)

        rounds = 0
        failed = [r.node_id for r in results if r.status == ExecutionStatus.FAILED]
        while failed and rounds < self.max_retry_rounds:
            if self.confirm_retry is None or not self.confirm_retry(failed):
                break
            rounds += 1
            logger.info("Retry round %d for %s", rounds, ", ".join(failed))
            self.manifest.reset_failed()
            self.executor.persist()
            results = self.executor.execute(
                selection.layers, node_filter=set(failed), force=force, options=options
            )
            self._record(results, final, attempt=rounds + 1)
            failed = [r.node_id for r in results if r.status == ExecutionStatus.FAILED]

        if not failed:
            self.manifest.mark_complete()
            self.executor.persist()

        ordered = [final[d.node] for d in plan.decisions]
        report = RunReport(
            status=self._status(ordered),
            phase=phase,
            selection=selection,
            results=ordered,
            rounds=rounds,
            duration=time.time() - start,
        )
        logger.info(
            "%s finished: %s (%d ok, %d skipped, %d failed)",
            phase, report.status.value, report.succeeded, report.skipped, report.failed,
        )
        return report

    def _record(
        self,
        results: List[NodeResult],
        final: Dict[str, NodeResult],
        attempt: int,
    ) -> None:
        for result in results:
            if attempt > 1 and result.reason == REASON_NOT_SELECTED:
                continue
            final[result.node_id] = result
            if self.run_logger is not None and result.ran:
                self.run_logger.log_node(
                    result.node_id,
                    result.status.value,
                    layer=result.layer,
                    duration_seconds=result.duration,
                    error_message=result.error_message,
                    output_log=result.output if result.status == ExecutionStatus.FAILED else None,
                    attempt=attempt,
                )

    @staticmethod
    def _status(results: List[NodeResult]) -> RunStatus:
        failed = any(r.status == ExecutionStatus.FAILED for r in results)
        if not failed:
            return RunStatus.COMPLETE
        # a node whose action reported nothing to do was still processed
        processed = any(
            r.status == ExecutionStatus.SUCCESS
            or (r.status == ExecutionStatus.SKIPPED and r.ran)
            for r in results
        )
        if processed:
            return RunStatus.INCOMPLETE
        return RunStatus.FAILED

from ripple.workflow.change import detect_changes, transitive_closure
from ripple.workflow.runner import (
    BuildOrchestrator,
    ExecutionPlan,
    ExecutionStatus,
    LayeredExecutor,
    NodeDecision,
    NodeResult,
    RunReport,
    RunStatus,
    plan_layers,
    plan_node,
)
from ripple.workflow.state import (
    Manifest,
    NodeState,
    Phase,
    PhaseState,
    PhaseStatus,
    load_manifest,
    save_manifest,
)

__all__ = [
    "BuildOrchestrator",
    "ExecutionPlan",
    "ExecutionStatus",
    "LayeredExecutor",
    "Manifest",
    "NodeDecision",
    "NodeResult",
    "NodeState",
    "Phase",
    "PhaseState",
    "PhaseStatus",
    "RunReport",
    "RunStatus",
    "detect_changes",
    "load_manifest",
    "plan_layers",
    "plan_node",
    "save_manifest",
    "transitive_closure",
]

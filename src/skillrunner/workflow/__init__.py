"""Workflow engine: planning, execution, checkpoints and streaming."""

from skillrunner.workflow.checkpoint import (
    Checkpoint,
    CheckpointStore,
    compute_fingerprint,
    default_machine_id,
    normalize_request,
)
from skillrunner.workflow.dag import PhaseGraph
from skillrunner.workflow.executor import WorkflowExecutor, failure_policy_for, final_output
from skillrunner.workflow.gates import AutoApproveGate, ConfirmGate, PlanGate
from skillrunner.workflow.phase_runner import PhaseRunner
from skillrunner.workflow.plan import ExecutionPlan, PhasePlan
from skillrunner.workflow.planner import Planner, effective_profile
from skillrunner.workflow.results import ExecutionResult, PhaseResult, PhaseStatus, WorkflowStatus
from skillrunner.workflow.streaming import (
    PhaseCompleted,
    PhaseFailed,
    PhaseProgress,
    PhaseStarted,
    StreamEvent,
    StreamingExecutor,
    StreamingRun,
    TokenUpdate,
    WorkflowCompleted,
)

__all__ = [
    "AutoApproveGate",
    "Checkpoint",
    "CheckpointStore",
    "ConfirmGate",
    "ExecutionPlan",
    "ExecutionResult",
    "PhaseCompleted",
    "PhaseFailed",
    "PhaseGraph",
    "PhasePlan",
    "PhaseProgress",
    "PhaseResult",
    "PhaseRunner",
    "PhaseStarted",
    "PhaseStatus",
    "PlanGate",
    "Planner",
    "StreamEvent",
    "StreamingExecutor",
    "StreamingRun",
    "TokenUpdate",
    "WorkflowCompleted",
    "WorkflowExecutor",
    "WorkflowStatus",
    "compute_fingerprint",
    "default_machine_id",
    "effective_profile",
    "failure_policy_for",
    "final_output",
    "normalize_request",
]

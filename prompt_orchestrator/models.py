"""
Runtime data models: execution state, step results and gate results.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .schema import FailureAction, WorkflowDefinition


class StepStatus(str, Enum):
    """Lifecycle of a single step"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    """Lifecycle of a workflow run"""
    PENDING = "pending"
    RUNNING = "running"
    WAITING_GATE = "waiting_gate"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.TIMEOUT,
            ExecutionStatus.CANCELLED,
        )


class GateDecision(str, Enum):
    """How the engine proceeds after a gate evaluation"""
    PROCEED = "proceed"
    STOP = "stop"
    RETRY = "retry"
    SKIP = "skip"
    ROLLBACK = "rollback"


def new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:12]}"


# ============================================================
# Gate results
# ============================================================

@dataclass
class RequirementResult:
    """Outcome of evaluating one gate requirement"""
    requirement_type: str
    passed: bool
    score: float
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    weight: float = 1.0
    required: bool = True

    def to_dict(self) -> dict:
        return {
            "requirement_type": self.requirement_type,
            "passed": self.passed,
            "score": self.score,
            "message": self.message,
            "details": self.details,
            "weight": self.weight,
            "required": self.required,
        }


@dataclass
class GateEvaluationResult:
    """Aggregate outcome of evaluating a gate against content"""
    gate_id: str
    passed: bool
    score: float
    threshold: float
    requirement_results: List[RequirementResult] = field(default_factory=list)
    hints: List[str] = field(default_factory=list)
    message: str = ""
    failure_action: FailureAction = FailureAction.STOP
    evaluation_time: float = 0.0  # seconds
    timestamp: float = field(default_factory=time.time)

    @property
    def failed_requirements(self) -> List[RequirementResult]:
        return [r for r in self.requirement_results if not r.passed]

    def retry_message(self) -> str:
        """Human-readable summary of what failed"""
        if self.passed:
            return f"Gate '{self.gate_id}' passed"
        failed = "; ".join(r.message for r in self.failed_requirements)
        if not failed:
            failed = f"score {self.score:.2f} below threshold {self.threshold:.2f}"
        return f"Gate '{self.gate_id}' failed: {failed}"

    def to_dict(self) -> dict:
        return {
            "gate_id": self.gate_id,
            "passed": self.passed,
            "score": self.score,
            "threshold": self.threshold,
            "requirement_results": [r.to_dict() for r in self.requirement_results],
            "hints": list(self.hints),
            "message": self.message,
            "failure_action": self.failure_action.value,
            "evaluation_time": self.evaluation_time,
            "timestamp": self.timestamp,
        }


# ============================================================
# Step results and execution context
# ============================================================

@dataclass
class StepResult:
    """Result of executing a single step"""
    content: str = ""
    status: StepStatus = StepStatus.PENDING
    timestamp: float = field(default_factory=time.time)
    gate_results: List[GateEvaluationResult] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def retry_count(self) -> int:
        return self.metadata.get("retry_count", 0)

    @property
    def error(self) -> Optional[str]:
        return self.metadata.get("error")


@dataclass
class ExecutionOptions:
    """Per-run execution switches"""
    step_confirmation: bool = False
    gate_validation: bool = True
    timeout: Optional[float] = None  # overall run deadline, seconds


@dataclass
class ExecutionContext:
    """
    Mutable per-run state, owned exclusively by the run that created it.

    `results` only ever holds content of completed steps, in the order
    they completed.
    """
    workflow: WorkflowDefinition
    inputs: Dict[str, Any] = field(default_factory=dict)
    results: Dict[str, str] = field(default_factory=dict)
    options: ExecutionOptions = field(default_factory=ExecutionOptions)
    runtime: str = "server"
    execution_id: str = field(default_factory=new_execution_id)
    start_time: float = field(default_factory=time.time)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class ExecutionPlan:
    """Deterministic step order for a workflow"""
    workflow_id: str
    execution_order: List[str]
    parallel_groups: List[List[str]] = field(default_factory=list)  # advisory only

    def position(self, step_id: str) -> int:
        return self.execution_order.index(step_id)


@dataclass
class GraphValidationResult:
    """Outcome of validating a dependency graph"""
    valid: bool
    cycles: List[List[str]] = field(default_factory=list)
    unreachable_nodes: List[str] = field(default_factory=list)


@dataclass
class RegistrationResult:
    """Outcome of registering a workflow; errors are aggregated, never raised"""
    workflow_id: Optional[str]
    errors: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class ExecutionError:
    """Step-attributed error surfaced on a failed run"""
    message: str
    code: str
    step: Optional[str] = None

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code, "step": self.step}


@dataclass
class WorkflowExecutionResult:
    """Terminal (or in-progress snapshot) result of a workflow run"""
    workflow_id: str
    execution_id: str
    status: ExecutionStatus
    start_time: float
    end_time: Optional[float] = None
    step_results: Dict[str, StepResult] = field(default_factory=dict)
    final_result: Optional[Dict[str, Any]] = None
    error: Optional[ExecutionError] = None
    current_step: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "step_results": {
                step_id: {
                    "content": r.content,
                    "status": r.status.value,
                    "timestamp": r.timestamp,
                    "gate_results": [g.to_dict() for g in r.gate_results],
                    "metadata": r.metadata,
                }
                for step_id, r in self.step_results.items()
            },
            "final_result": self.final_result,
            "error": self.error.to_dict() if self.error else None,
            "current_step": self.current_step,
        }

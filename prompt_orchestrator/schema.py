"""
Definition Schemas using Pydantic

Workflow, step, gate and retry-policy definitions. Definitions are
immutable once built; they arrive already deserialized (dicts are
accepted with either snake_case or the camelCase keys used by the
prompt server's JSON definitions).
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StepType(str, Enum):
    """Kinds of workflow steps"""
    PROMPT = "prompt"
    TOOL = "tool"
    GATE = "gate"
    CONDITION = "condition"
    PARALLEL = "parallel"


class OnErrorAction(str, Enum):
    """What to do once a step has failed for good"""
    STOP = "stop"
    SKIP = "skip"
    RETRY = "retry"
    ROLLBACK = "rollback"


class BackoffStrategy(str, Enum):
    """Delay growth between retry attempts"""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class GateType(str, Enum):
    """Categories of gates"""
    VALIDATION = "validation"
    APPROVAL = "approval"
    CONDITION = "condition"
    QUALITY = "quality"


class FailureAction(str, Enum):
    """What a failed gate asks the engine to do"""
    STOP = "stop"
    RETRY = "retry"
    SKIP = "skip"
    ROLLBACK = "rollback"


class DefinitionModel(BaseModel):
    """Common model configuration: frozen, accepts camelCase aliases."""
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        use_enum_values=False,
    )


# ============================================================================
# Policies
# ============================================================================

class RetryPolicy(DefinitionModel):
    """
    Retry/backoff policy as plain value data.

    Delays are in seconds. An empty `retryable_errors` list means every
    step execution error kind may be retried.
    """
    max_retries: int = Field(default=3, ge=0)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    retryable_errors: List[str] = Field(default_factory=list)

    def is_retryable(self, kind: str) -> bool:
        return not self.retryable_errors or kind in self.retryable_errors


class ErrorHandling(DefinitionModel):
    """Per-step on-error policy"""
    action: OnErrorAction = OnErrorAction.STOP
    fallback_step: Optional[str] = None


# ============================================================================
# Steps and graph
# ============================================================================

class StepConfig(DefinitionModel):
    """Type-specific step configuration. Only the fields for the step's type are read."""
    prompt_id: Optional[str] = None
    tool_name: Optional[str] = None
    gate_id: Optional[str] = None
    condition: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    steps: List["WorkflowStep"] = Field(default_factory=list)  # parallel sub-steps
    require_confirmation: bool = False  # gate steps only


class WorkflowStep(DefinitionModel):
    """A single typed unit of work within a workflow"""
    id: str
    name: str = ""
    type: StepType
    config: StepConfig = Field(default_factory=StepConfig)
    dependencies: List[str] = Field(default_factory=list)
    timeout: Optional[float] = Field(default=None, gt=0)  # seconds
    retries: Optional[int] = Field(default=None, ge=0)
    on_error: ErrorHandling = Field(default_factory=ErrorHandling)


StepConfig.model_rebuild()


class DependencyGraph(DefinitionModel):
    """
    Directed graph over step ids.

    An edge (A, B) means A must complete before B starts.
    """
    nodes: List[str] = Field(default_factory=list)
    edges: List[Tuple[str, str]] = Field(default_factory=list)

    @classmethod
    def from_steps(cls, steps: List[WorkflowStep]) -> "DependencyGraph":
        """Derive a graph from step dependency lists, in step order"""
        return cls(
            nodes=[step.id for step in steps],
            edges=[(dep, step.id) for step in steps for dep in step.dependencies],
        )

    def successors(self) -> Dict[str, List[str]]:
        """Adjacency list in edge insertion order"""
        adjacency: Dict[str, List[str]] = {node: [] for node in self.nodes}
        for source, target in self.edges:
            adjacency.setdefault(source, []).append(target)
        return adjacency

    def in_degrees(self) -> Dict[str, int]:
        degrees = {node: 0 for node in self.nodes}
        for _, target in self.edges:
            degrees[target] = degrees.get(target, 0) + 1
        return degrees


# ============================================================================
# Gates
# ============================================================================

class GateRequirement(DefinitionModel):
    """One scoring criterion within a gate"""
    type: str
    id: Optional[str] = None
    criteria: Dict[str, Any] = Field(default_factory=dict)
    weight: float = Field(default=1.0, ge=0)
    required: bool = True
    # runtime target -> criteria overrides
    runtime_overrides: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    def effective_criteria(self, runtime: Optional[str] = None) -> Dict[str, Any]:
        """Criteria merged with the override for `runtime`, if any"""
        overrides = self.runtime_overrides.get(runtime) if runtime else None
        if not overrides:
            return dict(self.criteria)
        return {**self.criteria, **overrides}


class GateDefinition(DefinitionModel):
    """A validation checkpoint with weighted requirements"""
    id: str
    name: str = ""
    description: str = ""
    type: GateType = GateType.VALIDATION
    requirements: List[GateRequirement] = Field(default_factory=list)
    failure_action: FailureAction = FailureAction.STOP
    threshold: Optional[float] = Field(default=None, ge=0, le=1)  # None = configured default
    retry_policy: Optional[RetryPolicy] = None


# ============================================================================
# Workflow
# ============================================================================

class WorkflowDefinition(DefinitionModel):
    """Complete workflow definition: a DAG of typed steps"""
    id: str
    name: str = ""
    version: str = "1.0"
    description: str = ""
    steps: List[WorkflowStep] = Field(default_factory=list)
    dependencies: Optional[DependencyGraph] = None  # derived from steps when omitted
    retry_policy: Optional[RetryPolicy] = None  # None = configured default
    gates: List[GateDefinition] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def dependency_graph(self) -> DependencyGraph:
        if self.dependencies is not None:
            return self.dependencies
        return DependencyGraph.from_steps(self.steps)

    def predecessors(self, step_id: str) -> List[str]:
        """
        Steps that must complete before `step_id` starts: its declared
        dependencies plus the sources of any graph edge into it.
        """
        ordered: Dict[str, None] = {}
        step = self.get_step(step_id)
        if step is not None:
            ordered.update(dict.fromkeys(step.dependencies))
        if self.dependencies is not None:
            ordered.update(dict.fromkeys(s for s, t in self.dependencies.edges if t == step_id))
        return list(ordered)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def get_gate(self, gate_id: str) -> Optional[GateDefinition]:
        for gate in self.gates:
            if gate.id == gate_id:
                return gate
        return None

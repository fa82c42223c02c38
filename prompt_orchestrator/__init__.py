"""
Prompt Orchestrator - Workflow Execution Engine

Runs multi-step prompt workflows (graphs of typed steps with
dependencies), applies per-step retry and error policies, and validates
produced content against weighted quality gates.
"""

__version__ = "1.0.0"

from .schema import (
    WorkflowDefinition,
    WorkflowStep,
    StepConfig,
    StepType,
    DependencyGraph,
    ErrorHandling,
    OnErrorAction,
    RetryPolicy,
    BackoffStrategy,
    GateDefinition,
    GateRequirement,
    GateType,
    FailureAction,
)

from .models import (
    ExecutionContext,
    ExecutionOptions,
    ExecutionPlan,
    ExecutionStatus,
    GateDecision,
    GateEvaluationResult,
    GraphValidationResult,
    RegistrationResult,
    RequirementResult,
    StepResult,
    StepStatus,
    WorkflowExecutionResult,
)

from .errors import (
    ErrorCodes,
    OrchestratorError,
    ValidationError,
    DependencyError,
    StepExecutionError,
    StepTimeoutError,
    GateFailureError,
    CancellationError,
    RollbackError,
    RollbackRequested,
    PlanningInvariantError,
    WorkflowNotFoundError,
    GateNotFoundError,
    ExecutionNotFoundError,
    WorkflowParseError,
    ConfigurationError,
)

from .graph import DependencyGraphValidator, validate_graph
from .planner import ExecutionPlanner
from .retry import compute_backoff
from .gates import GateEvaluator
from .executor import StepExecutor
from .orchestrator import WorkflowOrchestrator
from .chains import ChainDefinition, ChainStepDefinition, ChainExecutionResult, ChainRunner, chain_to_workflow
from .history import ExecutionHistory
from .config import ConfigManager, EngineConfig, configure_logging
from .parser import parse_workflow, parse_gate, load_workflow_file

__all__ = [
    "__version__",
    # Definitions
    "WorkflowDefinition",
    "WorkflowStep",
    "StepConfig",
    "StepType",
    "DependencyGraph",
    "ErrorHandling",
    "OnErrorAction",
    "RetryPolicy",
    "BackoffStrategy",
    "GateDefinition",
    "GateRequirement",
    "GateType",
    "FailureAction",
    # Runtime models
    "ExecutionContext",
    "ExecutionOptions",
    "ExecutionPlan",
    "ExecutionStatus",
    "GateDecision",
    "GateEvaluationResult",
    "GraphValidationResult",
    "RegistrationResult",
    "RequirementResult",
    "StepResult",
    "StepStatus",
    "WorkflowExecutionResult",
    # Errors
    "ErrorCodes",
    "OrchestratorError",
    "ValidationError",
    "DependencyError",
    "StepExecutionError",
    "StepTimeoutError",
    "GateFailureError",
    "CancellationError",
    "RollbackError",
    "RollbackRequested",
    "PlanningInvariantError",
    "WorkflowNotFoundError",
    "GateNotFoundError",
    "ExecutionNotFoundError",
    "WorkflowParseError",
    "ConfigurationError",
    # Engine
    "DependencyGraphValidator",
    "validate_graph",
    "ExecutionPlanner",
    "compute_backoff",
    "GateEvaluator",
    "StepExecutor",
    "WorkflowOrchestrator",
    "ChainDefinition",
    "ChainStepDefinition",
    "ChainExecutionResult",
    "ChainRunner",
    "chain_to_workflow",
    "ExecutionHistory",
    # Configuration
    "ConfigManager",
    "EngineConfig",
    "configure_logging",
    "parse_workflow",
    "parse_gate",
    "load_workflow_file",
]

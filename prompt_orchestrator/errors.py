"""
Error taxonomy for workflow execution and gate validation.

Validation errors are collected and returned at registration time.
Everything else is raised during execution and resolved by the
executor's retry logic or the orchestrator's error policy.
"""

from typing import Any, Optional


class ErrorCodes:
    """Codes surfaced in WorkflowExecutionResult.error"""
    STEP_EXECUTION_ERROR = "STEP_EXECUTION_ERROR"
    STEP_TIMEOUT = "STEP_TIMEOUT"
    GATE_FAILED = "GATE_FAILED"
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    EXECUTION_ERROR = "EXECUTION_ERROR"


class OrchestratorError(Exception):
    """Base exception for all engine errors"""
    code = ErrorCodes.EXECUTION_ERROR


class ValidationError(OrchestratorError):
    """
    A single problem with a workflow or gate definition.

    Instances are returned in lists from registration calls; they are
    never raised while a workflow executes.
    """

    def __init__(self, message: str, path: str = "", code: str = "invalid_definition"):
        self.message = message
        self.path = path
        self.code = code
        super().__init__(message)

    def __repr__(self) -> str:
        return f"ValidationError({self.path or '<root>'}: {self.message})"


class ConfigurationError(OrchestratorError):
    """Configuration is invalid"""
    pass


class WorkflowParseError(OrchestratorError):
    """Error turning raw data into a definition model"""

    def __init__(self, message: str, errors: Optional[list] = None):
        self.errors = list(errors or [])
        super().__init__(message)


class WorkflowNotFoundError(OrchestratorError):
    """No workflow registered under the requested id"""
    pass


class GateNotFoundError(OrchestratorError):
    """No gate registered under the requested id"""
    pass


class ExecutionNotFoundError(OrchestratorError):
    """No execution known under the requested id"""
    pass


class PlanningInvariantError(OrchestratorError):
    """
    Topological sort could not order every node.

    Registration rejects cyclic graphs, so reaching this is a bug.
    """
    pass


class DependencyError(OrchestratorError):
    """A step was dispatched before its dependencies completed"""
    code = ErrorCodes.DEPENDENCY_ERROR

    def __init__(self, step_id: str, missing: list):
        self.step_id = step_id
        self.missing = list(missing)
        super().__init__(
            f"Dependency not satisfied for step '{step_id}': {', '.join(self.missing)}"
        )


class StepExecutionError(OrchestratorError):
    """
    An external delegation failed while executing a step.

    Recoverable according to the step's retry and on-error policy.
    `result` holds the failed StepResult once the executor has given up.
    """
    code = ErrorCodes.STEP_EXECUTION_ERROR
    kind = "execution_error"

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        result: Any = None,
        kind: Optional[str] = None,
    ):
        self.message = message
        self.step_id = step_id
        self.result = result
        if kind:
            self.kind = kind
        super().__init__(message)


class StepTimeoutError(StepExecutionError):
    """A step exceeded its configured timeout"""
    code = ErrorCodes.STEP_TIMEOUT
    kind = "timeout"


class GateFailureError(StepExecutionError):
    """Content failed gate validation"""
    code = ErrorCodes.GATE_FAILED
    kind = "gate_failed"

    def __init__(self, message: str, step_id: Optional[str] = None,
                 gate_result: Any = None, result: Any = None):
        self.gate_result = gate_result
        super().__init__(message, step_id=step_id, result=result)


class CancellationError(OrchestratorError):
    """The run was cancelled; always terminal, never retried"""
    code = ErrorCodes.CANCELLED


class RollbackError(OrchestratorError):
    """A requested rollback could not be performed"""
    code = ErrorCodes.ROLLBACK_FAILED

    def __init__(self, message: str, step_id: Optional[str] = None):
        self.step_id = step_id
        super().__init__(message)


class RollbackRequested(OrchestratorError):
    """
    Signal from the executor asking the orchestrator to rewind the run
    to a fallback step.
    """
    code = ErrorCodes.ROLLBACK_FAILED

    def __init__(self, step_id: str, fallback_step: Optional[str],
                 reason: str = "", result: Any = None):
        self.step_id = step_id
        self.fallback_step = fallback_step
        self.reason = reason
        self.result = result
        super().__init__(
            f"Step '{step_id}' requested rollback to '{fallback_step}': {reason}"
        )

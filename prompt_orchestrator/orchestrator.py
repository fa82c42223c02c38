"""
Workflow Orchestrator

Owns workflow registration and per-run execution state. Drives the
planner and step executor over a workflow and aggregates the results.

Run lifecycle:
    pending -> running -> (waiting_gate) -> completed | failed | timeout | cancelled
"""
import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import AbstractSet, Any, Dict, List, Optional, Union

from .collaborators import ConditionEvaluator, PromptRunner, ToolInvoker, join_contents
from .config import EngineConfig
from .errors import (
    CancellationError,
    ErrorCodes,
    ExecutionNotFoundError,
    OrchestratorError,
    RollbackError,
    RollbackRequested,
    StepExecutionError,
    ValidationError,
    WorkflowNotFoundError,
    WorkflowParseError,
)
from .executor import StepExecutor
from .gates import GateEvaluator
from .graph import DependencyGraphValidator
from .history import ExecutionHistory
from .models import (
    ExecutionContext,
    ExecutionError,
    ExecutionOptions,
    ExecutionPlan,
    ExecutionStatus,
    GateEvaluationResult,
    RegistrationResult,
    StepResult,
    StepStatus,
    WorkflowExecutionResult,
)
from .parser import parse_workflow
from .planner import ExecutionPlanner
from .schema import FailureAction, OnErrorAction, StepType, WorkflowDefinition, WorkflowStep

logger = logging.getLogger(__name__)


@dataclass
class _ExecutionRecord:
    """Live state of one run, owned by the orchestrator that started it"""
    context: ExecutionContext
    plan: ExecutionPlan
    result: WorkflowExecutionResult
    confirm_event: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional["asyncio.Task[WorkflowExecutionResult]"] = None


class WorkflowOrchestrator:
    """
    Registers workflows and executes them step by step.

    Every orchestrator owns its own registry and execution store, so
    several can coexist in one process.
    """

    def __init__(
        self,
        prompt_runner: Optional[PromptRunner] = None,
        tool_invoker: Optional[ToolInvoker] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        gate_evaluator: Optional[GateEvaluator] = None,
        config: Optional[EngineConfig] = None,
        history: Optional[ExecutionHistory] = None,
    ):
        self.config = config or EngineConfig()
        self.history = history or ExecutionHistory(self.config.history.max_entries)
        self.gate_evaluator = gate_evaluator or GateEvaluator(self.config.gates, self.history)
        self.executor = StepExecutor(
            prompt_runner=prompt_runner,
            tool_invoker=tool_invoker,
            gate_evaluator=self.gate_evaluator,
            condition_evaluator=condition_evaluator,
            config=self.config,
        )
        self.validator = DependencyGraphValidator()
        self.planner = ExecutionPlanner()

        self._registry_lock = threading.Lock()
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._plans: Dict[str, ExecutionPlan] = {}
        self._gate_owners: Dict[str, str] = {}  # gate id -> workflow id that registered it

        self._executions_lock = threading.Lock()
        self._executions: Dict[str, _ExecutionRecord] = {}
        self._archived: "OrderedDict[str, WorkflowExecutionResult]" = OrderedDict()

    # ==================================================================
    # Registration
    # ==================================================================

    def register_workflow(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> RegistrationResult:
        """
        Validate and register a workflow, replacing any with the same id.

        Returns:
            RegistrationResult carrying every validation error found;
            the workflow is registered only when there are none
        """
        if isinstance(definition, dict):
            try:
                definition = parse_workflow(definition)
            except WorkflowParseError as e:
                workflow_id = definition.get("id") if isinstance(definition.get("id"), str) else None
                return RegistrationResult(workflow_id, e.errors or [ValidationError(str(e))])

        errors = self.validate_workflow(definition)
        if errors:
            logger.warning(f"Workflow {definition.id!r} rejected with {len(errors)} error(s)")
            return RegistrationResult(definition.id, errors)

        with self._registry_lock:
            self._release_gates(definition.id, keep={gate.id for gate in definition.gates})
            for gate in definition.gates:
                owner = self._gate_owners.get(gate.id)
                if owner != definition.id and self.gate_evaluator.get_gate(gate.id) is not None:
                    logger.warning(
                        f"Gate {gate.id} (registered by {owner or 'the gate evaluator'}) "
                        f"replaced by workflow {definition.id}"
                    )
                self.gate_evaluator.register_gate(gate)
                self._gate_owners[gate.id] = definition.id
            self._workflows[definition.id] = definition
            self._plans[definition.id] = self.planner.create_plan(definition)

        logger.info(f"Registered workflow: {definition.id} ({len(definition.steps)} steps)")
        return RegistrationResult(definition.id, [])

    def validate_workflow(self, workflow: WorkflowDefinition) -> List[ValidationError]:
        """Every problem with a definition, aggregated"""
        errors: List[ValidationError] = []

        if not workflow.id:
            errors.append(ValidationError("Workflow ID is required", path="id"))
        if not workflow.name:
            errors.append(ValidationError("Workflow name is required", path="name"))
        if not workflow.version:
            errors.append(ValidationError("Workflow version is required", path="version"))
        if not workflow.steps:
            errors.append(ValidationError("Workflow must have at least one step", path="steps"))

        step_ids = {step.id for step in workflow.steps}
        seen = set()
        for i, step in enumerate(workflow.steps):
            path = f"steps.{i}"
            if not step.id:
                errors.append(ValidationError(f"Step missing ID: {step.name}", path=f"{path}.id"))
            elif step.id in seen:
                errors.append(ValidationError(f"Duplicate step ID: {step.id}", path=f"{path}.id"))
            seen.add(step.id)

            for dep in step.dependencies:
                if dep not in step_ids:
                    errors.append(ValidationError(
                        f"Step {step.id} depends on unknown step: {dep}",
                        path=f"{path}.dependencies",
                    ))
            errors.extend(self._validate_step_config(step, workflow, path))
            errors.extend(self._validate_error_policy(step, workflow, step_ids, path))

        for j, gate in enumerate(workflow.gates):
            errors.extend(self.gate_evaluator.validate_gate(gate, path=f"gates.{j}"))

        graph_errors = self._validate_graph(workflow, step_ids)
        errors.extend(graph_errors)

        if not errors:
            errors.extend(self._validate_rollback_order(workflow))
        return errors

    def _validate_step_config(self, step: WorkflowStep, workflow: WorkflowDefinition,
                              path: str) -> List[ValidationError]:
        errors = []
        config = step.config
        if step.type == StepType.PROMPT and not config.prompt_id:
            errors.append(ValidationError(f"Prompt step missing promptId: {step.id}", path=f"{path}.config"))
        elif step.type == StepType.TOOL and not config.tool_name:
            errors.append(ValidationError(f"Tool step missing toolName: {step.id}", path=f"{path}.config"))
        elif step.type == StepType.CONDITION and not config.condition:
            errors.append(ValidationError(f"Condition step missing condition: {step.id}", path=f"{path}.config"))
        elif step.type == StepType.GATE:
            if not config.gate_id:
                errors.append(ValidationError(f"Gate step missing gateId: {step.id}", path=f"{path}.config"))
            elif workflow.get_gate(config.gate_id) is None and self.gate_evaluator.get_gate(config.gate_id) is None:
                errors.append(ValidationError(
                    f"Gate step {step.id} references unknown gate: {config.gate_id}",
                    path=f"{path}.config.gate_id",
                ))
        elif step.type == StepType.PARALLEL:
            if not config.steps:
                errors.append(ValidationError(f"Parallel step has no sub-steps: {step.id}", path=f"{path}.config"))
            for k, sub in enumerate(config.steps):
                sub_path = f"{path}.config.steps.{k}"
                if sub.dependencies:
                    errors.append(ValidationError(
                        f"Parallel sub-step {sub.id} cannot declare dependencies",
                        path=f"{sub_path}.dependencies",
                    ))
                errors.extend(self._validate_step_config(sub, workflow, sub_path))
        return errors

    def _validate_error_policy(self, step: WorkflowStep, workflow: WorkflowDefinition,
                               step_ids: set, path: str) -> List[ValidationError]:
        errors = []
        fallback = step.on_error.fallback_step
        needs_fallback = step.on_error.action == OnErrorAction.ROLLBACK
        if step.type == StepType.GATE and step.config.gate_id:
            gate = workflow.get_gate(step.config.gate_id) or self.gate_evaluator.get_gate(step.config.gate_id)
            if gate is not None and gate.failure_action == FailureAction.ROLLBACK:
                needs_fallback = True

        if needs_fallback and not fallback:
            errors.append(ValidationError(
                f"Step {step.id} rolls back but has no fallbackStep",
                path=f"{path}.on_error.fallback_step",
            ))
        elif fallback and fallback not in step_ids:
            errors.append(ValidationError(
                f"Step {step.id} has unknown fallbackStep: {fallback}",
                path=f"{path}.on_error.fallback_step",
            ))
        return errors

    def _validate_graph(self, workflow: WorkflowDefinition, step_ids: set) -> List[ValidationError]:
        errors = []
        graph = workflow.dependency_graph()

        if workflow.dependencies is not None:
            edges = set(graph.edges)
            nodes = set(graph.nodes)
            for step in workflow.steps:
                if step.id not in nodes:
                    errors.append(ValidationError(
                        f"Step {step.id} missing from dependency graph", path="dependencies.nodes"
                    ))
                for dep in step.dependencies:
                    if (dep, step.id) not in edges:
                        errors.append(ValidationError(
                            f"Dependency {dep} -> {step.id} missing from dependency graph",
                            path="dependencies.edges",
                        ))
            for node in graph.nodes:
                if node not in step_ids:
                    errors.append(ValidationError(
                        f"Graph node {node} is not a workflow step", path="dependencies.nodes"
                    ))

        for message in self.validator.structural_errors(graph):
            errors.append(ValidationError(message, path="dependencies"))

        validation = self.validator.validate(graph)
        for cycle in validation.cycles:
            errors.append(ValidationError(
                f"Dependency cycle detected: {' -> '.join(cycle)}",
                path="dependencies",
                code="dependency_cycle",
            ))
        for node in validation.unreachable_nodes:
            errors.append(ValidationError(
                f"Unreachable step: {node}", path="dependencies", code="unreachable_step"
            ))
        return errors

    def _validate_rollback_order(self, workflow: WorkflowDefinition) -> List[ValidationError]:
        """Fallback steps must run before the steps that roll back to them"""
        errors = []
        plan = self.planner.create_plan(workflow)
        for i, step in enumerate(workflow.steps):
            fallback = step.on_error.fallback_step
            if fallback and plan.position(fallback) >= plan.position(step.id):
                errors.append(ValidationError(
                    f"fallbackStep {fallback} must run before step {step.id}",
                    path=f"steps.{i}.on_error.fallback_step",
                ))
        return errors

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self._workflows.get(workflow_id)

    def list_workflows(self) -> List[WorkflowDefinition]:
        with self._registry_lock:
            return list(self._workflows.values())

    def unregister_workflow(self, workflow_id: str) -> bool:
        """Remove a workflow along with the gates it registered"""
        with self._registry_lock:
            self._release_gates(workflow_id)
            self._plans.pop(workflow_id, None)
            return self._workflows.pop(workflow_id, None) is not None

    def _release_gates(self, workflow_id: str, keep: AbstractSet[str] = frozenset()) -> None:
        for gate_id, owner in list(self._gate_owners.items()):
            if owner == workflow_id and gate_id not in keep:
                self.gate_evaluator.unregister_gate(gate_id)
                del self._gate_owners[gate_id]

    def get_plan(self, workflow_id: str) -> ExecutionPlan:
        plan = self._plans.get(workflow_id)
        if plan is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return plan

    # ==================================================================
    # Execution
    # ==================================================================

    async def execute_workflow(
        self,
        workflow_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
        runtime: Optional[str] = None,
    ) -> WorkflowExecutionResult:
        """
        Execute a registered workflow to a terminal state.

        Raises:
            WorkflowNotFoundError: No workflow registered under the id
        """
        record = self._create_execution(workflow_id, inputs, options, runtime)
        return await self._run(record)

    def start_workflow(
        self,
        workflow_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
        runtime: Optional[str] = None,
    ) -> str:
        """Schedule a run on the running event loop and return its execution id"""
        record = self._create_execution(workflow_id, inputs, options, runtime)
        record.task = asyncio.ensure_future(self._run(record))
        return record.context.execution_id

    async def wait_for_execution(self, execution_id: str) -> WorkflowExecutionResult:
        with self._executions_lock:
            record = self._executions.get(execution_id)
            archived = self._archived.get(execution_id)
        if record is not None:
            await record.done.wait()
            return record.result
        if archived is not None:
            return archived
        raise ExecutionNotFoundError(f"Execution not found: {execution_id}")

    def get_execution_status(self, execution_id: str) -> WorkflowExecutionResult:
        """Snapshot of a run, live or finished"""
        with self._executions_lock:
            record = self._executions.get(execution_id)
            if record is not None:
                return replace(record.result, step_results=dict(record.result.step_results))
            archived = self._archived.get(execution_id)
        if archived is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return archived

    def list_active_executions(self) -> List[str]:
        with self._executions_lock:
            return [eid for eid, r in self._executions.items() if not r.result.status.is_terminal]

    def cancel_execution(self, execution_id: str) -> bool:
        """Request cancellation; returns False if the run is unknown or finished"""
        with self._executions_lock:
            record = self._executions.get(execution_id)
        if record is None or record.result.status.is_terminal:
            return False
        logger.info(f"Cancellation requested for execution {execution_id}")
        record.context.cancel_event.set()
        return True

    def confirm_gate(self, execution_id: str) -> bool:
        """Resume a run waiting on gate confirmation"""
        with self._executions_lock:
            record = self._executions.get(execution_id)
        if record is None or record.result.status != ExecutionStatus.WAITING_GATE:
            return False
        record.confirm_event.set()
        return True

    async def evaluate_gate(self, gate_id: str, content: str,
                            context: Optional[Dict[str, Any]] = None) -> GateEvaluationResult:
        return await self.gate_evaluator.evaluate(gate_id, content, context)

    def _create_execution(self, workflow_id: str, inputs: Optional[Dict[str, Any]],
                          options: Optional[ExecutionOptions], runtime: Optional[str]) -> _ExecutionRecord:
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")

        context = ExecutionContext(
            workflow=workflow,
            inputs=dict(inputs or {}),
            options=options or ExecutionOptions(),
            runtime=runtime or self.config.execution.default_runtime,
        )
        record = _ExecutionRecord(
            context=context,
            plan=self.get_plan(workflow_id),
            result=WorkflowExecutionResult(
                workflow_id=workflow_id,
                execution_id=context.execution_id,
                status=ExecutionStatus.PENDING,
                start_time=context.start_time,
            ),
        )
        with self._executions_lock:
            self._executions[context.execution_id] = record
        return record

    async def _run(self, record: _ExecutionRecord) -> WorkflowExecutionResult:
        context = record.context
        result = record.result
        result.status = ExecutionStatus.RUNNING
        logger.info(f"Starting workflow {context.workflow.id} (execution {context.execution_id})")

        try:
            if context.options.timeout:
                await asyncio.wait_for(self._run_steps(record), timeout=context.options.timeout)
            else:
                await self._run_steps(record)
        except asyncio.TimeoutError:
            logger.warning(f"Workflow {context.workflow.id} exceeded timeout of {context.options.timeout}s")
            self._finish(record, ExecutionStatus.TIMEOUT, ExecutionError(
                message=f"Workflow exceeded timeout of {context.options.timeout}s",
                code=ErrorCodes.TIMEOUT,
                step=result.current_step,
            ))
        except CancellationError as e:
            logger.info(f"Workflow {context.workflow.id} cancelled")
            self._finish(record, ExecutionStatus.CANCELLED, ExecutionError(
                message=str(e), code=ErrorCodes.CANCELLED, step=result.current_step,
            ))
        except StepExecutionError as e:
            if e.result is not None and e.step_id:
                result.step_results[e.step_id] = e.result
            self._finish(record, ExecutionStatus.FAILED, ExecutionError(
                message=e.message, code=e.code, step=e.step_id or result.current_step,
            ))
        except OrchestratorError as e:
            logger.error(f"Workflow {context.workflow.id} failed: {e}")
            self._finish(record, ExecutionStatus.FAILED, ExecutionError(
                message=str(e), code=e.code, step=getattr(e, "step_id", None) or result.current_step,
            ))
        except Exception as e:
            logger.exception(f"Unexpected error in workflow {context.workflow.id}")
            self._finish(record, ExecutionStatus.FAILED, ExecutionError(
                message=str(e), code=ErrorCodes.EXECUTION_ERROR, step=result.current_step,
            ))
        else:
            result.final_result = self.aggregate_results(record.plan, result.step_results)
            self._finish(record, ExecutionStatus.COMPLETED)
        return result

    async def _run_steps(self, record: _ExecutionRecord) -> None:
        context = record.context
        result = record.result
        order = record.plan.execution_order
        rollbacks = 0
        index = 0

        while index < len(order):
            step_id = order[index]
            if context.cancelled:
                raise CancellationError(f"Execution cancelled before step '{step_id}'")

            step = context.workflow.get_step(step_id)
            result.current_step = step_id

            blocked = [
                dep for dep in context.workflow.predecessors(step_id) if dep not in context.results
            ]
            if blocked:
                logger.info(f"Skipping step {step_id}: dependencies not completed ({', '.join(blocked)})")
                result.step_results[step_id] = StepResult(
                    status=StepStatus.SKIPPED,
                    metadata={"skip_reason": "dependency_not_completed", "blocked_by": blocked},
                )
                index += 1
                continue

            if context.options.step_confirmation and step.type == StepType.GATE \
                    and step.config.require_confirmation:
                await self._wait_for_confirmation(record, step)

            try:
                step_result = await self.executor.execute_step(step, context)
            except RollbackRequested as rollback:
                rollbacks += 1
                index = self._rollback(record, rollback, index, rollbacks)
                continue

            result.step_results[step_id] = step_result
            if step_result.status == StepStatus.COMPLETED:
                context.results[step_id] = step_result.content
            logger.debug(f"Step {step_id} completed with status: {step_result.status.value}")
            index += 1

        result.current_step = None

    async def _wait_for_confirmation(self, record: _ExecutionRecord, step: WorkflowStep) -> None:
        record.result.status = ExecutionStatus.WAITING_GATE
        record.confirm_event.clear()
        logger.info(f"Execution {record.context.execution_id} waiting for confirmation of gate step {step.id}")

        waiters = {
            asyncio.ensure_future(record.confirm_event.wait()),
            asyncio.ensure_future(record.context.cancel_event.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if record.context.cancelled:
            raise CancellationError(f"Execution cancelled while waiting on gate step '{step.id}'")
        record.result.status = ExecutionStatus.RUNNING

    def _rollback(self, record: _ExecutionRecord, rollback: RollbackRequested,
                  index: int, rollbacks: int) -> int:
        """Rewind to the fallback step; returns the plan index to resume from"""
        order = record.plan.execution_order
        fallback = rollback.fallback_step
        if rollback.result is not None:
            record.result.step_results[rollback.step_id] = rollback.result

        if rollbacks > self.config.execution.max_rollbacks:
            raise RollbackError(
                f"Step '{rollback.step_id}' exceeded {self.config.execution.max_rollbacks} rollbacks: "
                f"{rollback.reason}",
                step_id=rollback.step_id,
            )
        if not fallback or fallback not in order or order.index(fallback) >= index:
            raise RollbackError(
                f"Cannot roll back step '{rollback.step_id}' to '{fallback}': {rollback.reason}",
                step_id=rollback.step_id,
            )

        target = order.index(fallback)
        for step_id in order[target:]:
            record.context.results.pop(step_id, None)
            record.result.step_results.pop(step_id, None)
        logger.warning(f"Rolling back from {rollback.step_id} to {fallback} ({rollback.reason})")
        return target

    @staticmethod
    def aggregate_results(plan: ExecutionPlan, step_results: Dict[str, StepResult]) -> Dict[str, Any]:
        """Concatenate completed steps' content in plan order"""
        completed = [
            (step_id, step_results[step_id]) for step_id in plan.execution_order
            if step_id in step_results and step_results[step_id].status == StepStatus.COMPLETED
        ]
        return {
            "summary": f"Workflow completed with {len(completed)} successful steps",
            "content": join_contents([r.content for _, r in completed]),
            "steps": [{"step_id": step_id, "content": r.content} for step_id, r in completed],
        }

    def _finish(self, record: _ExecutionRecord, status: ExecutionStatus,
                error: Optional[ExecutionError] = None) -> None:
        result = record.result
        result.status = status
        result.error = error
        result.end_time = time.time()
        if error:
            logger.error(f"Execution {result.execution_id} {status.value}: [{error.code}] {error.message}")
        else:
            logger.info(f"Execution {result.execution_id} {status.value} in {result.duration:.2f}s")

        self.history.record_execution(result)
        with self._executions_lock:
            self._executions.pop(result.execution_id, None)
            self._archived[result.execution_id] = result
            while len(self._archived) > self.config.execution.retained_executions:
                self._archived.popitem(last=False)
        record.done.set()

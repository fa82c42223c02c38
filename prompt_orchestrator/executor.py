"""
Step execution: dispatch by step type, timeouts, cancellation and retry.

The executor runs one step at a time against an ExecutionContext and
either returns a StepResult or raises. Which failures are retried and
what happens once retries are exhausted is decided here; rewinding a
run (rollback) is left to the orchestrator.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .collaborators import (
    ConditionEvaluator,
    ExpressionConditionEvaluator,
    PromptRunner,
    ToolInvoker,
    condition_variables,
    join_contents,
    maybe_await,
    stringify_args,
)
from .config import EngineConfig
from .errors import (
    CancellationError,
    DependencyError,
    GateFailureError,
    OrchestratorError,
    RollbackRequested,
    StepExecutionError,
    StepTimeoutError,
)
from .gates import GateEvaluator
from .models import ExecutionContext, GateDecision, GateEvaluationResult, StepResult, StepStatus
from .retry import sleep_before_retry
from .schema import GateDefinition, OnErrorAction, RetryPolicy, StepType, WorkflowStep

logger = logging.getLogger(__name__)

StepHandler = Callable[[WorkflowStep, ExecutionContext], Awaitable[StepResult]]


class StepExecutor:
    """
    Executes individual workflow steps.

    Collaborators may be sync or async; a missing prompt runner or tool
    invoker makes steps of that type fail.
    """

    def __init__(
        self,
        prompt_runner: Optional[PromptRunner] = None,
        tool_invoker: Optional[ToolInvoker] = None,
        gate_evaluator: Optional[GateEvaluator] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self.prompt_runner = prompt_runner
        self.tool_invoker = tool_invoker
        self.gate_evaluator = gate_evaluator or GateEvaluator(self.config.gates)
        self.condition_evaluator = condition_evaluator or ExpressionConditionEvaluator()
        self._handlers: Dict[StepType, StepHandler] = {
            StepType.PROMPT: self._execute_prompt,
            StepType.TOOL: self._execute_tool,
            StepType.GATE: self._execute_gate,
            StepType.CONDITION: self._execute_condition,
            StepType.PARALLEL: self._execute_parallel,
        }

    async def execute_step(self, step: WorkflowStep, context: ExecutionContext) -> StepResult:
        """
        Execute a step, retrying according to its error policy.

        Raises:
            DependencyError: A dependency has no completed result
            CancellationError: The run was cancelled
            StepExecutionError: The step failed and its policy is stop
            GateFailureError: A gate with failure action stop did not pass
            RollbackRequested: The step failed and its policy is rollback
        """
        required = dict.fromkeys([*step.dependencies, *context.workflow.predecessors(step.id)])
        missing = [dep for dep in required if dep not in context.results]
        if missing:
            raise DependencyError(step.id, missing)

        policy = self.retry_policy(context)
        max_attempts = 1
        if step.on_error.action == OnErrorAction.RETRY:
            retries = step.retries if step.retries is not None else policy.max_retries
            max_attempts += retries

        attempt = 0
        last_error: Optional[StepExecutionError] = None
        while True:
            self._check_cancelled(step, context)
            attempt += 1
            started = time.perf_counter()
            try:
                result = await self._run_with_limits(step, context)
            except GateFailureError as e:
                e.step_id = e.step_id or step.id
                if e.result is None:
                    e.result = self._failed_result(step, e, attempt - 1)
                raise
            except StepExecutionError as e:
                last_error = e
                if attempt < max_attempts and policy.is_retryable(e.kind):
                    logger.warning(
                        f"Step {step.id} failed (attempt {attempt}/{max_attempts}): {e.message}"
                    )
                    await sleep_before_retry(
                        policy, attempt, self.config.retry.jitter_factor, context.cancel_event
                    )
                    continue
                return self._resolve_failure(step, e, attempt - 1)

            result.metadata.setdefault("execution_time", time.perf_counter() - started)
            result.metadata.setdefault("step_type", step.type.value)
            if attempt > 1:
                result.metadata["retry_count"] = attempt - 1
                result.metadata["last_error"] = last_error.message if last_error else None
            return result

    # ------------------------------------------------------------------
    # Timeout / cancellation
    # ------------------------------------------------------------------

    async def _run_with_limits(self, step: WorkflowStep, context: ExecutionContext) -> StepResult:
        """Run the step's handler, racing it against its timeout and the cancel signal"""
        handler = self._handlers.get(step.type)
        if handler is None:
            raise StepExecutionError(f"Unknown step type: {step.type}", step_id=step.id)

        timeout = step.timeout or self.config.execution.default_step_timeout
        task = asyncio.ensure_future(handler(step, context))
        cancel_waiter = asyncio.ensure_future(context.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            try:
                return task.result()
            except OrchestratorError:
                raise
            except Exception as e:
                logger.error(f"Step {step.id} failed: {e}")
                raise StepExecutionError(f"Step '{step.id}' failed: {e}", step_id=step.id) from e

        # the handler was interrupted; wait for it to unwind
        await asyncio.gather(task, return_exceptions=True)
        if context.cancelled:
            raise CancellationError(f"Execution cancelled during step '{step.id}'")
        logger.warning(f"Step {step.id} timed out after {timeout}s")
        raise StepTimeoutError(f"Step '{step.id}' timed out after {timeout}s", step_id=step.id)

    def retry_policy(self, context: ExecutionContext) -> RetryPolicy:
        """The workflow's own policy, else the configured default"""
        return context.workflow.retry_policy or self.config.default_retry_policy()

    def _check_cancelled(self, step: WorkflowStep, context: ExecutionContext) -> None:
        if context.cancelled:
            raise CancellationError(f"Execution cancelled before step '{step.id}'")

    # ------------------------------------------------------------------
    # Failure resolution
    # ------------------------------------------------------------------

    def _failed_result(self, step: WorkflowStep, error: StepExecutionError, retry_count: int) -> StepResult:
        return StepResult(
            content="",
            status=StepStatus.FAILED,
            metadata={
                "error": error.message,
                "error_kind": error.kind,
                "retry_count": retry_count,
                "step_type": step.type.value,
            },
        )

    def _resolve_failure(self, step: WorkflowStep, error: StepExecutionError, retry_count: int) -> StepResult:
        """Apply the step's on-error action once retries are used up"""
        result = self._failed_result(step, error, retry_count)
        action = step.on_error.action

        if action == OnErrorAction.SKIP:
            logger.warning(f"Step {step.id} failed, skipping: {error.message}")
            result.status = StepStatus.SKIPPED
            result.metadata["skip_reason"] = "on_error"
            return result

        if action == OnErrorAction.ROLLBACK:
            raise RollbackRequested(
                step.id, step.on_error.fallback_step, reason=error.message, result=result
            )

        logger.error(f"Step {step.id} failed: {error.message}")
        error.step_id = error.step_id or step.id
        error.result = result
        raise error

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def build_prompt_args(self, step: WorkflowStep, context: ExecutionContext) -> Dict[str, str]:
        """Workflow inputs, then `<dep>_result` entries, then step parameters"""
        args: Dict[str, Any] = dict(context.inputs)
        for dep in step.dependencies:
            if dep in context.results:
                args[f"{dep}_result"] = context.results[dep]
        args.update(step.config.parameters)
        return stringify_args(args)

    async def _execute_prompt(self, step: WorkflowStep, context: ExecutionContext) -> StepResult:
        prompt_id = step.config.prompt_id
        if not prompt_id:
            raise StepExecutionError(f"Prompt ID not specified for step: {step.id}", step_id=step.id)
        if self.prompt_runner is None:
            raise StepExecutionError("No prompt runner configured", step_id=step.id)

        args = self.build_prompt_args(step, context)
        output = await maybe_await(self.prompt_runner.run_prompt(prompt_id, args))
        logger.debug(f"Prompt step {step.id} executed successfully")
        return StepResult(
            content=str(output),
            status=StepStatus.COMPLETED,
            metadata={"prompt_id": prompt_id},
        )

    async def _execute_tool(self, step: WorkflowStep, context: ExecutionContext) -> StepResult:
        tool_name = step.config.tool_name
        if not tool_name:
            raise StepExecutionError(f"Tool name not specified for step: {step.id}", step_id=step.id)
        if self.tool_invoker is None:
            raise StepExecutionError("No tool invoker configured", step_id=step.id)

        output = await maybe_await(self.tool_invoker.invoke_tool(tool_name, dict(step.config.parameters)))
        return StepResult(
            content=str(output),
            status=StepStatus.COMPLETED,
            metadata={"tool_name": tool_name},
        )

    async def _execute_condition(self, step: WorkflowStep, context: ExecutionContext) -> StepResult:
        expression = step.config.condition
        if not expression:
            raise StepExecutionError(f"Condition not specified for step: {step.id}", step_id=step.id)

        variables = condition_variables(context.inputs, context.results)
        outcome = bool(await maybe_await(self.condition_evaluator.evaluate(expression, variables)))
        return StepResult(
            content="true" if outcome else "false",
            status=StepStatus.COMPLETED,
            metadata={"condition": expression, "condition_result": outcome},
        )

    async def _execute_parallel(self, step: WorkflowStep, context: ExecutionContext) -> StepResult:
        sub_steps = step.config.steps
        outcomes = await asyncio.gather(
            *(self.execute_step(sub, context) for sub in sub_steps),
            return_exceptions=True,
        )

        for outcome in outcomes:
            if isinstance(outcome, CancellationError):
                raise outcome
        failures = [
            (sub.id, outcome) for sub, outcome in zip(sub_steps, outcomes)
            if isinstance(outcome, BaseException)
        ]
        if failures:
            detail = "; ".join(f"{sub_id}: {err}" for sub_id, err in failures)
            raise StepExecutionError(f"Parallel step '{step.id}' failed: {detail}", step_id=step.id)

        results: List[StepResult] = list(outcomes)
        contents = [r.content for r in results if r.status == StepStatus.COMPLETED]
        return StepResult(
            content=join_contents(contents),
            status=StepStatus.COMPLETED,
            metadata={
                "sub_results": {
                    sub.id: {"status": r.status.value, "content": r.content}
                    for sub, r in zip(sub_steps, results)
                },
            },
        )

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def gate_content(self, step: WorkflowStep, context: ExecutionContext) -> str:
        """
        Content a gate step validates: the last dependency's result,
        else the `content` input, else every result so far joined.
        """
        if step.dependencies:
            last = context.results.get(step.dependencies[-1])
            if last:
                return str(last)
        if context.inputs.get("content"):
            return str(context.inputs["content"])
        return join_contents(list(context.results.values()))

    def find_gate(self, gate_id: str, context: ExecutionContext) -> Optional[GateDefinition]:
        return context.workflow.get_gate(gate_id) or self.gate_evaluator.get_gate(gate_id)

    async def _execute_gate(self, step: WorkflowStep, context: ExecutionContext) -> StepResult:
        gate_id = step.config.gate_id
        if not gate_id:
            raise StepExecutionError(f"Gate ID not specified for step: {step.id}", step_id=step.id)
        gate = self.find_gate(gate_id, context)
        if gate is None:
            raise StepExecutionError(f"Gate definition not found: {gate_id}", step_id=step.id)

        if not context.options.gate_validation:
            return StepResult(
                content=f"Gate {gate_id} validation skipped",
                status=StepStatus.COMPLETED,
                metadata={"gate_id": gate_id, "validation_skipped": True},
            )

        content = self.gate_content(step, context)
        gate_context = {
            "runtime": context.runtime,
            "execution_id": context.execution_id,
            "workflow_id": context.workflow.id,
            "step_id": step.id,
            "inputs": dict(context.inputs),
        }
        evaluation = await self.gate_evaluator.evaluate_definition(gate, content, gate_context)
        evaluations = [evaluation]

        decision = self.gate_evaluator.resolve_failure(gate, evaluation)
        if decision == GateDecision.RETRY:
            policy = gate.retry_policy or self.retry_policy(context)
            attempt = 0
            while not evaluation.passed and attempt < policy.max_retries:
                attempt += 1
                await sleep_before_retry(
                    policy, attempt, self.config.retry.jitter_factor, context.cancel_event
                )
                self._check_cancelled(step, context)
                evaluation = await self.gate_evaluator.evaluate_definition(gate, content, gate_context)
                evaluations.append(evaluation)
            decision = GateDecision.PROCEED if evaluation.passed else GateDecision.STOP

        metadata: Dict[str, Any] = {
            "gate_id": gate_id,
            "gate_score": evaluation.score,
            "gate_passed": evaluation.passed,
        }
        if len(evaluations) > 1:
            metadata["retry_count"] = len(evaluations) - 1

        if decision == GateDecision.PROCEED:
            logger.debug(f"Gate {gate_id} passed validation")
            return StepResult(
                content=f"Gate {gate_id} validation passed",
                status=StepStatus.COMPLETED,
                gate_results=evaluations,
                metadata=metadata,
            )

        message = evaluation.retry_message()
        logger.warning(f"Gate {gate_id} failed validation: {message}")

        if decision == GateDecision.SKIP:
            logger.info(f"Gate {gate_id} failed but configured to skip")
            metadata["gate_failed"] = True
            return StepResult(
                content=f"Gate {gate_id} failed but skipped: {message}",
                status=StepStatus.COMPLETED,
                gate_results=evaluations,
                metadata=metadata,
            )

        failed = self._gate_failed_result(step, message, evaluations, metadata)
        if decision == GateDecision.ROLLBACK:
            raise RollbackRequested(
                step.id, step.on_error.fallback_step, reason=message, result=failed
            )
        raise GateFailureError(
            f"Gate validation failed: {message}",
            step_id=step.id,
            gate_result=evaluation,
            result=failed,
        )

    def _gate_failed_result(self, step: WorkflowStep, message: str,
                            evaluations: List[GateEvaluationResult],
                            metadata: Dict[str, Any]) -> StepResult:
        metadata = dict(metadata)
        metadata.update({
            "error": message,
            "error_kind": GateFailureError.kind,
            "step_type": step.type.value,
        })
        metadata.setdefault("retry_count", 0)
        return StepResult(
            content="",
            status=StepStatus.FAILED,
            gate_results=evaluations,
            metadata=metadata,
        )

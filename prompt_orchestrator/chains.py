"""
Chain compatibility layer.

A chain is a strictly linear list of prompt steps whose outputs feed
later steps by name. Chains are converted to workflows (step i depends
only on step i-1) and run through a WorkflowOrchestrator.

Only outputs named in a step's output mapping propagate forward and
into the chain result; everything else a step produces is dropped.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import Field

from .collaborators import PromptRunner, maybe_await
from .config import EngineConfig
from .errors import WorkflowParseError
from .history import ExecutionHistory
from .models import ExecutionStatus, WorkflowExecutionResult
from .orchestrator import WorkflowOrchestrator
from .schema import DefinitionModel, StepConfig, StepType, WorkflowDefinition, WorkflowStep

logger = logging.getLogger(__name__)

CHAIN_STEP_PARAM = "_chain_step"


class ChainStepDefinition(DefinitionModel):
    """One prompt in a chain"""
    prompt_id: str
    step_name: str
    # prompt argument -> available key
    input_mapping: Dict[str, str] = Field(default_factory=dict)
    # forwarded name -> step output key
    output_mapping: Dict[str, str] = Field(default_factory=dict)


class ChainDefinition(DefinitionModel):
    id: str
    name: str = ""
    steps: List[ChainStepDefinition] = Field(default_factory=list)


@dataclass
class ChainExecutionResult:
    """Mapped outputs of every step plus the underlying workflow run"""
    chain_id: str
    status: ExecutionStatus
    results: Dict[str, Any] = field(default_factory=dict)
    execution: Optional[WorkflowExecutionResult] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED


def chain_step_id(index: int) -> str:
    return f"step_{index + 1}"


def chain_to_workflow(chain: ChainDefinition) -> WorkflowDefinition:
    """Build the strict-path workflow equivalent of a chain"""
    steps = []
    for i, chain_step in enumerate(chain.steps):
        steps.append(WorkflowStep(
            id=chain_step_id(i),
            name=chain_step.step_name,
            type=StepType.PROMPT,
            config=StepConfig(
                prompt_id=chain_step.prompt_id,
                parameters={CHAIN_STEP_PARAM: i},
            ),
            dependencies=[chain_step_id(i - 1)] if i > 0 else [],
        ))
    return WorkflowDefinition(
        id=f"chain:{chain.id}",
        name=chain.name or chain.id,
        steps=steps,
        metadata={"chain_id": chain.id},
    )


def parse_step_output(output: str) -> Dict[str, Any]:
    """
    Named outputs of a step: the keys of a JSON object output, plus the
    whole text under `output`.
    """
    outputs: Dict[str, Any] = {}
    try:
        parsed = json.loads(output)
    except (TypeError, ValueError):
        parsed = None
    if isinstance(parsed, dict):
        outputs.update(parsed)
    outputs["output"] = output
    return outputs


def _as_arg(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


class _ChainRunState:
    """Keys available to the steps of one chain run"""

    def __init__(self, chain: ChainDefinition, inputs: Dict[str, Any]):
        self.chain = chain
        self.available: Dict[str, Any] = dict(inputs)
        self.forwarded: Dict[str, Any] = {}


class _ChainStepRunner:
    """Prompt runner seen by the workflow engine during a chain run"""

    def __init__(self, state: _ChainRunState, prompt_runner: PromptRunner):
        self.state = state
        self.prompt_runner = prompt_runner

    async def run_prompt(self, prompt_id: str, args: Dict[str, str]) -> str:
        index = int(args[CHAIN_STEP_PARAM])
        step = self.state.chain.steps[index]
        total = len(self.state.chain.steps)
        logger.info(f"Executing chain step {index + 1}/{total}: {step.step_name} ({prompt_id})")

        step_args = self._step_args(step, index, total)
        output = str(await maybe_await(self.prompt_runner.run_prompt(prompt_id, step_args)))

        outputs = parse_step_output(output)
        for forward_name, output_key in step.output_mapping.items():
            if output_key not in outputs:
                logger.warning(
                    f"Step '{step.step_name}' produced no output '{output_key}' for '{forward_name}'"
                )
                continue
            self.state.available[forward_name] = outputs[output_key]
            self.state.forwarded[forward_name] = outputs[output_key]
        return output

    def _step_args(self, step: ChainStepDefinition, index: int, total: int) -> Dict[str, str]:
        available = self.state.available
        if step.input_mapping:
            args = {}
            for step_input, key in step.input_mapping.items():
                if key in available:
                    args[step_input] = _as_arg(available[key])
                else:
                    logger.warning(
                        f"Missing input mapping for step '{step.step_name}': {key} -> {step_input}"
                    )
        else:
            args = {key: _as_arg(value) for key, value in available.items()}

        args["step_number"] = str(index + 1)
        args["total_steps"] = str(total)
        args["step_name"] = step.step_name
        return args


class ChainRunner:
    """Runs chains through the workflow engine"""

    def __init__(self, prompt_runner: PromptRunner, config: Optional[EngineConfig] = None,
                 history: Optional[ExecutionHistory] = None):
        self.prompt_runner = prompt_runner
        self.config = config or EngineConfig()
        self.history = history or ExecutionHistory(self.config.history.max_entries)

    async def run(self, chain: ChainDefinition, inputs: Optional[Dict[str, Any]] = None) -> ChainExecutionResult:
        inputs = dict(inputs or {})
        state = _ChainRunState(chain, inputs)
        orchestrator = WorkflowOrchestrator(
            prompt_runner=_ChainStepRunner(state, self.prompt_runner),
            config=self.config,
            history=self.history,
        )

        workflow = chain_to_workflow(chain)
        registration = orchestrator.register_workflow(workflow)
        if not registration.ok:
            problems = "; ".join(e.message for e in registration.errors)
            raise WorkflowParseError(f"Chain '{chain.id}' is not runnable: {problems}", registration.errors)

        logger.info(f"Executing prompt chain: {chain.name or chain.id} ({len(chain.steps)} steps)")
        execution = await orchestrator.execute_workflow(workflow.id, inputs)
        return ChainExecutionResult(
            chain_id=chain.id,
            status=execution.status,
            results=dict(state.forwarded),
            execution=execution,
        )

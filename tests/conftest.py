"""
Pytest fixtures for prompt orchestrator tests
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from prompt_orchestrator.config import EngineConfig
from prompt_orchestrator.orchestrator import WorkflowOrchestrator
from prompt_orchestrator.schema import RetryPolicy, WorkflowDefinition, WorkflowStep

Response = Union[str, Callable[[Dict[str, str]], Any]]


class MockPromptRunner:
    """
    Deterministic prompt runner.

    `responses` maps prompt id to a string or a callable taking the
    args; `failures` maps prompt id to how many calls fail first.
    """

    def __init__(self, responses: Optional[Dict[str, Response]] = None,
                 failures: Optional[Dict[str, int]] = None,
                 delays: Optional[Dict[str, float]] = None):
        self.responses = responses or {}
        self.failures = dict(failures or {})
        self.delays = delays or {}
        self.calls: List[Tuple[str, Dict[str, str]]] = []

    async def run_prompt(self, prompt_id: str, args: Dict[str, str]) -> str:
        self.calls.append((prompt_id, dict(args)))
        if prompt_id in self.delays:
            await asyncio.sleep(self.delays[prompt_id])
        if self.failures.get(prompt_id, 0) > 0:
            self.failures[prompt_id] -= 1
            raise RuntimeError(f"{prompt_id} failed")
        response = self.responses.get(prompt_id, f"{prompt_id} output")
        if callable(response):
            return response(args)
        return response

    def call_count(self, prompt_id: str) -> int:
        return sum(1 for called, _ in self.calls if called == prompt_id)


class MockToolInvoker:
    """Synchronous tool invoker returning canned output"""

    def __init__(self, responses: Optional[Dict[str, str]] = None):
        self.responses = responses or {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def invoke_tool(self, tool_name: str, params: Dict[str, Any]) -> str:
        self.calls.append((tool_name, dict(params)))
        return self.responses.get(tool_name, f"{tool_name} result")


def prompt_step(step_id: str, deps: Optional[List[str]] = None, **kwargs) -> WorkflowStep:
    """Prompt step whose prompt id equals the step id"""
    config = {"prompt_id": step_id, **kwargs.pop("config", {})}
    return WorkflowStep(
        id=step_id,
        name=kwargs.pop("name", step_id),
        type="prompt",
        config=config,
        dependencies=deps or [],
        **kwargs,
    )


def make_workflow(steps: List[WorkflowStep], **kwargs) -> WorkflowDefinition:
    """Workflow with zero-delay retries unless a policy is given; None defers to the engine config"""
    kwargs.setdefault("retry_policy", RetryPolicy(max_retries=2, base_delay=0.0))
    return WorkflowDefinition(
        id=kwargs.pop("id", "test_workflow"),
        name=kwargs.pop("name", "Test Workflow"),
        steps=steps,
        **kwargs,
    )


@pytest.fixture
def engine_config():
    """Engine configuration with instant retries"""
    config = EngineConfig()
    config.retry.base_delay = 0.0
    return config


@pytest.fixture
def prompt_runner():
    return MockPromptRunner()


@pytest.fixture
def tool_invoker():
    return MockToolInvoker()


@pytest.fixture
def orchestrator(prompt_runner, tool_invoker, engine_config):
    return WorkflowOrchestrator(
        prompt_runner=prompt_runner,
        tool_invoker=tool_invoker,
        config=engine_config,
    )

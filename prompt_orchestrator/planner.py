"""
Execution planning: deterministic topological order via Kahn's algorithm.
"""
import logging
from collections import deque
from typing import Dict, List, Tuple

from .errors import PlanningInvariantError
from .models import ExecutionPlan
from .schema import DependencyGraph, WorkflowDefinition

logger = logging.getLogger(__name__)


class ExecutionPlanner:
    """
    Computes the order in which a workflow's steps run.

    Ties between ready nodes are broken by node insertion order, so a
    fixed graph always yields the same plan.
    """

    def plan(self, graph: DependencyGraph) -> List[str]:
        order, _ = self._kahn(graph)
        return order

    def parallel_groups(self, graph: DependencyGraph) -> List[List[str]]:
        """
        Waves of nodes that reach zero in-degree together.

        Advisory: the orchestrator still runs steps one at a time.
        """
        _, waves = self._kahn(graph)
        return waves

    def create_plan(self, workflow: WorkflowDefinition) -> ExecutionPlan:
        graph = workflow.dependency_graph()
        order, waves = self._kahn(graph)
        logger.debug(f"Execution plan for {workflow.id}: {order}")
        return ExecutionPlan(
            workflow_id=workflow.id,
            execution_order=order,
            parallel_groups=waves,
        )

    def _kahn(self, graph: DependencyGraph) -> Tuple[List[str], List[List[str]]]:
        in_degree: Dict[str, int] = graph.in_degrees()
        adjacency = graph.successors()

        # wave number travels with each queued node
        queue = deque((node, 0) for node in graph.nodes if in_degree[node] == 0)
        order: List[str] = []
        waves: List[List[str]] = []

        while queue:
            node, wave = queue.popleft()
            order.append(node)
            if wave == len(waves):
                waves.append([])
            waves[wave].append(node)

            for successor in adjacency.get(node, []):
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    queue.append((successor, wave + 1))

        if len(order) != len(graph.nodes):
            ordered = set(order)
            stuck = [node for node in graph.nodes if node not in ordered]
            raise PlanningInvariantError(
                f"Dependency graph could not be fully ordered; stuck nodes: {stuck}"
            )

        return order, waves

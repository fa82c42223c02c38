"""
Dependency graph validation: cycle detection and reachability.

Validation never raises; it returns a structured result so that
registration can report every problem at once.
"""
import logging
from typing import Dict, List, Set

from .models import GraphValidationResult
from .schema import DependencyGraph

logger = logging.getLogger(__name__)


class DependencyGraphValidator:
    """Checks a step graph for cycles and unreachable nodes."""

    def validate(self, graph: DependencyGraph) -> GraphValidationResult:
        cycles = self.detect_cycles(graph)
        unreachable = self.find_unreachable_nodes(graph)
        if cycles or unreachable:
            logger.debug(
                f"Graph invalid: {len(cycles)} cycle(s), "
                f"{len(unreachable)} unreachable node(s)"
            )
        return GraphValidationResult(
            valid=not cycles and not unreachable,
            cycles=cycles,
            unreachable_nodes=unreachable,
        )

    def detect_cycles(self, graph: DependencyGraph) -> List[List[str]]:
        """
        Depth-first search with a recursion stack.

        Each cycle is reported as a closed path: it starts and ends with
        the same node. Scanning restarts from every unvisited node so
        independent cycles are all reported in one pass.
        """
        adjacency = graph.successors()
        visited: Set[str] = set()
        on_stack: Set[str] = set()
        cycles: List[List[str]] = []

        # Iterative DFS; frames are (node, iterator over successors)
        for root in self._all_nodes(graph):
            if root in visited:
                continue
            path: List[str] = [root]
            visited.add(root)
            on_stack.add(root)
            stack = [(root, iter(adjacency.get(root, [])))]

            while stack:
                node, neighbours = stack[-1]
                advanced = False
                for neighbour in neighbours:
                    if neighbour in on_stack:
                        start = path.index(neighbour)
                        cycles.append(path[start:] + [neighbour])
                        continue
                    if neighbour in visited:
                        continue
                    visited.add(neighbour)
                    on_stack.add(neighbour)
                    path.append(neighbour)
                    stack.append((neighbour, iter(adjacency.get(neighbour, []))))
                    advanced = True
                    break
                if not advanced:
                    stack.pop()
                    on_stack.discard(node)
                    path.pop()

        return cycles

    def find_unreachable_nodes(self, graph: DependencyGraph) -> List[str]:
        """
        Nodes not reachable by forward traversal from any zero in-degree node.

        A disconnected subgraph without such a root (e.g. a pure cycle)
        is reported in full.
        """
        adjacency = graph.successors()
        has_incoming = {target for _, target in graph.edges}
        start_nodes = [node for node in graph.nodes if node not in has_incoming]

        reachable: Set[str] = set()
        pending = list(start_nodes)
        while pending:
            node = pending.pop()
            if node in reachable:
                continue
            reachable.add(node)
            pending.extend(adjacency.get(node, []))

        return [node for node in graph.nodes if node not in reachable]

    def structural_errors(self, graph: DependencyGraph) -> List[str]:
        """Duplicate nodes and edge endpoints that are not nodes"""
        errors = []
        seen: Set[str] = set()
        for node in graph.nodes:
            if node in seen:
                errors.append(f"Duplicate graph node: {node}")
            seen.add(node)
        for source, target in graph.edges:
            for endpoint in (source, target):
                if endpoint not in seen:
                    errors.append(
                        f"Edge ({source} -> {target}) references unknown node: {endpoint}"
                    )
        return errors

    def _all_nodes(self, graph: DependencyGraph) -> List[str]:
        """Declared nodes first, then any edge endpoint missing from them"""
        ordered: Dict[str, None] = dict.fromkeys(graph.nodes)
        for source, target in graph.edges:
            ordered.setdefault(source, None)
            ordered.setdefault(target, None)
        return list(ordered)


def validate_graph(graph: DependencyGraph) -> GraphValidationResult:
    """Validate `graph` with a default validator"""
    return DependencyGraphValidator().validate(graph)

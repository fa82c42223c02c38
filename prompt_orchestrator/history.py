"""
Execution History

Append-only record of finished workflow executions and gate
evaluations, used for analytics.
"""

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from .models import GateEvaluationResult, WorkflowExecutionResult


class ExecutionHistory:
    """
    Thread-safe bounded history of executions and gate evaluations

    Oldest entries are evicted once `max_entries` is reached.
    """

    def __init__(self, max_entries: int = 1000):
        self._lock = threading.Lock()
        self._executions: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._gate_evaluations: Deque[Dict[str, Any]] = deque(maxlen=max_entries)

    def record_execution(self, result: WorkflowExecutionResult) -> None:
        entry = {
            "workflow_id": result.workflow_id,
            "execution_id": result.execution_id,
            "status": result.status.value,
            "duration": result.duration,
            "steps": {step_id: r.status.value for step_id, r in result.step_results.items()},
            "error": result.error.to_dict() if result.error else None,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self._executions.append(entry)

    def record_gate_evaluation(self, result: GateEvaluationResult) -> None:
        entry = {
            "gate_id": result.gate_id,
            "passed": result.passed,
            "score": result.score,
            "threshold": result.threshold,
            "evaluation_time": result.evaluation_time,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self._gate_evaluations.append(entry)

    def get_executions(self, workflow_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Get recorded executions

        Args:
            workflow_id: Filter by workflow (None for all)
            limit: Maximum number of entries

        Returns:
            List of entries (most recent first)
        """
        with self._lock:
            entries = [e for e in self._executions
                       if workflow_id is None or e["workflow_id"] == workflow_id]
        return list(reversed(entries))[:limit]

    def get_gate_evaluations(self, gate_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Recorded gate evaluations, most recent first"""
        with self._lock:
            entries = [e for e in self._gate_evaluations
                       if gate_id is None or e["gate_id"] == gate_id]
        return list(reversed(entries))[:limit]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            executions = list(self._executions)
            gates = list(self._gate_evaluations)

        by_status: Dict[str, int] = {}
        for entry in executions:
            by_status[entry["status"]] = by_status.get(entry["status"], 0) + 1

        gate_passes = sum(1 for e in gates if e["passed"])
        return {
            "total_executions": len(executions),
            "executions_by_status": by_status,
            "total_gate_evaluations": len(gates),
            "gate_pass_rate": gate_passes / len(gates) if gates else 0.0,
        }

    def clear(self) -> None:
        with self._lock:
            self._executions.clear()
            self._gate_evaluations.clear()

"""
Gate evaluation: weighted requirement scoring with a pass threshold.

Gates are checked by code. Requirement evaluators and hint generators
are pluggable per requirement type; the built-ins cover content
length, keyword presence, format and section checks.
"""
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Union

from ..collaborators import maybe_await
from ..config import GateConfig
from ..errors import GateNotFoundError, ValidationError, WorkflowParseError
from ..history import ExecutionHistory
from ..models import GateDecision, GateEvaluationResult, RequirementResult
from ..parser import parse_gate
from ..schema import FailureAction, GateDefinition, GateRequirement
from .hints import BUILTIN_HINT_GENERATORS, HintGenerator
from .requirements import BUILTIN_EVALUATORS, RequirementEvaluator

logger = logging.getLogger(__name__)


@dataclass
class GateUsageStats:
    """Per-gate usage counters"""
    evaluations: int = 0
    passes: int = 0
    failures: int = 0
    total_time: float = 0.0  # seconds
    last_used: Optional[float] = None

    @property
    def average_time(self) -> float:
        return self.total_time / self.evaluations if self.evaluations else 0.0

    def to_dict(self) -> dict:
        return {
            "evaluations": self.evaluations,
            "passes": self.passes,
            "failures": self.failures,
            "average_time": self.average_time,
            "last_used": self.last_used,
        }


_FAILURE_DECISIONS = {
    FailureAction.STOP: GateDecision.STOP,
    FailureAction.RETRY: GateDecision.RETRY,
    FailureAction.SKIP: GateDecision.SKIP,
    FailureAction.ROLLBACK: GateDecision.ROLLBACK,
}


class GateEvaluator:
    """
    Registry of gates plus the scoring engine that evaluates them.

    Aggregate score is the weight-normalised mean of requirement scores.
    A gate passes when no required requirement failed and the aggregate
    reaches the gate's threshold (or the configured default).
    """

    def __init__(self, config: Optional[GateConfig] = None,
                 history: Optional[ExecutionHistory] = None):
        self.config = config or GateConfig()
        self.history = history
        self._lock = threading.Lock()
        self._gates: Dict[str, GateDefinition] = {}
        self._stats: Dict[str, GateUsageStats] = {}
        self._evaluators: Dict[str, RequirementEvaluator] = dict(BUILTIN_EVALUATORS)
        self._hint_generators: Dict[str, HintGenerator] = dict(BUILTIN_HINT_GENERATORS)

    # ------------------------------------------------------------------
    # Plugins
    # ------------------------------------------------------------------

    def register_evaluator(self, requirement_type: str, evaluator: RequirementEvaluator) -> None:
        with self._lock:
            self._evaluators[requirement_type] = evaluator
        logger.debug(f"Registered evaluator for requirement type: {requirement_type}")

    def register_hint_generator(self, requirement_type: str, generator: HintGenerator) -> None:
        with self._lock:
            self._hint_generators[requirement_type] = generator

    def known_requirement_types(self) -> List[str]:
        return list(self._evaluators)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def validate_gate(self, gate: GateDefinition, path: str = "") -> List[ValidationError]:
        """Problems with a gate definition; empty when it is usable"""
        prefix = f"{path}." if path else ""
        errors = []
        if not gate.id:
            errors.append(ValidationError("Gate id is required", path=f"{prefix}id"))
        for i, requirement in enumerate(gate.requirements):
            if requirement.type not in self._evaluators:
                errors.append(ValidationError(
                    f"Unknown requirement type: {requirement.type}",
                    path=f"{prefix}requirements.{i}.type",
                    code="unknown_requirement_type",
                ))
        return errors

    def register_gate(self, gate: Union[GateDefinition, Dict[str, Any]]) -> List[ValidationError]:
        """
        Register (or replace) a gate.

        Returns:
            List of validation errors; the gate is only stored when empty
        """
        if isinstance(gate, dict):
            try:
                gate = parse_gate(gate)
            except WorkflowParseError as e:
                return e.errors or [ValidationError(str(e))]

        errors = self.validate_gate(gate)
        if errors:
            logger.warning(f"Gate {gate.id!r} rejected with {len(errors)} error(s)")
            return errors

        with self._lock:
            self._gates[gate.id] = gate
            self._stats.setdefault(gate.id, GateUsageStats())
        logger.info(f"Registered gate: {gate.id}")
        return []

    def get_gate(self, gate_id: str) -> Optional[GateDefinition]:
        return self._gates.get(gate_id)

    def unregister_gate(self, gate_id: str) -> bool:
        with self._lock:
            removed = self._gates.pop(gate_id, None) is not None
            self._stats.pop(gate_id, None)
        return removed

    def list_gates(self) -> List[GateDefinition]:
        with self._lock:
            return list(self._gates.values())

    def get_gate_stats(self, gate_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            stats = self._stats.get(gate_id)
            return stats.to_dict() if stats else None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(self, gate_id: str, content: str,
                       context: Optional[Dict[str, Any]] = None) -> GateEvaluationResult:
        """Evaluate a registered gate against content"""
        gate = self.get_gate(gate_id)
        if gate is None:
            raise GateNotFoundError(f"Gate not found: {gate_id}")
        return await self.evaluate_definition(gate, content, context)

    async def evaluate_definition(self, gate: GateDefinition, content: str,
                                  context: Optional[Dict[str, Any]] = None) -> GateEvaluationResult:
        """Evaluate a gate definition, registered or not"""
        context = context or {}
        started = time.perf_counter()
        runtime = context.get("runtime")
        threshold = gate.threshold if gate.threshold is not None else self.config.default_threshold

        requirement_results = []
        for requirement in gate.requirements:
            requirement_results.append(
                await self._evaluate_requirement(requirement, content, context, runtime)
            )

        if requirement_results:
            total_weight = sum(r.weight for r in requirement_results)
            weighted = sum(r.score * r.weight for r in requirement_results)
            score = weighted / total_weight if total_weight > 0 else 0.0
        else:
            score = 1.0

        required_failed = any(r.required and not r.passed for r in requirement_results)
        passed = not required_failed and score >= threshold

        hints: List[str] = []
        if score < 1.0:
            for requirement, result in zip(gate.requirements, requirement_results):
                hints.extend(await self._generate_hints(requirement, result))

        elapsed = time.perf_counter() - started
        result = GateEvaluationResult(
            gate_id=gate.id,
            passed=passed,
            score=score,
            threshold=threshold,
            requirement_results=requirement_results,
            hints=hints,
            message=self._message(gate, passed, score, threshold),
            failure_action=gate.failure_action,
            evaluation_time=elapsed,
        )

        self._record(result)
        logger.debug(
            f"Gate evaluation complete: {gate.id} - "
            f"{'PASSED' if passed else 'FAILED'} ({score:.2f})"
        )
        return result

    def resolve_failure(self, gate: GateDefinition, result: GateEvaluationResult) -> GateDecision:
        """How the engine should proceed given a gate result"""
        if result.passed:
            return GateDecision.PROCEED
        return _FAILURE_DECISIONS[gate.failure_action]

    async def _evaluate_requirement(self, requirement: GateRequirement, content: str,
                                    context: Dict[str, Any], runtime: Optional[str]) -> RequirementResult:
        effective = requirement.model_copy(update={"criteria": requirement.effective_criteria(runtime)})
        evaluator = self._evaluators.get(requirement.type)

        if evaluator is None:
            result = RequirementResult(
                requirement_type=requirement.type,
                passed=False,
                score=0.0,
                message=f"No evaluator registered for requirement type: {requirement.type}",
            )
        else:
            try:
                raw = await maybe_await(evaluator(effective, content, context))
                result = self._normalize(requirement.type, raw)
            except Exception as e:
                logger.warning(f"Requirement evaluator '{requirement.type}' raised: {e}")
                result = RequirementResult(
                    requirement_type=requirement.type,
                    passed=False,
                    score=0.0,
                    message=f"Evaluator error: {e}",
                    details={"error": str(e)},
                )

        result.score = min(1.0, max(0.0, result.score))
        result.weight = requirement.weight
        result.required = requirement.required
        return result

    def _normalize(self, requirement_type: str, raw: Any) -> RequirementResult:
        """Accept a RequirementResult or a plain dict from plugins"""
        if isinstance(raw, RequirementResult):
            return replace(raw, score=float(raw.score), details=dict(raw.details))
        if isinstance(raw, dict):
            passed = bool(raw.get("passed", False))
            score = raw.get("score")
            return RequirementResult(
                requirement_type=requirement_type,
                passed=passed,
                score=float(score) if score is not None else (1.0 if passed else 0.0),
                message=raw.get("message", ""),
                details=raw.get("details", {}),
            )
        raise TypeError(f"Unsupported evaluator result type: {type(raw).__name__}")

    async def _generate_hints(self, requirement: GateRequirement,
                              result: RequirementResult) -> List[str]:
        generator = self._hint_generators.get(requirement.type)
        if generator is None:
            return []
        try:
            return list(await maybe_await(generator(requirement, result)) or [])
        except Exception as e:
            logger.warning(f"Hint generator '{requirement.type}' raised: {e}")
            return []

    def _message(self, gate: GateDefinition, passed: bool, score: float, threshold: float) -> str:
        name = gate.name or gate.id
        if passed:
            return f"Gate '{name}' passed (score {score:.2f})"
        return f"Gate '{name}' failed (score {score:.2f}, threshold {threshold:.2f})"

    def _record(self, result: GateEvaluationResult) -> None:
        with self._lock:
            stats = self._stats.setdefault(result.gate_id, GateUsageStats())
            stats.evaluations += 1
            stats.total_time += result.evaluation_time
            stats.last_used = result.timestamp
            if result.passed:
                stats.passes += 1
            else:
                stats.failures += 1

        if self.history is not None and self.config.record_history:
            self.history.record_gate_evaluation(result)

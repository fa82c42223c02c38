"""Gate validation: registry, scoring engine and built-in requirements."""

from .evaluator import GateEvaluator, GateUsageStats
from .hints import BUILTIN_HINT_GENERATORS
from .requirements import BUILTIN_EVALUATORS

__all__ = [
    "GateEvaluator",
    "GateUsageStats",
    "BUILTIN_EVALUATORS",
    "BUILTIN_HINT_GENERATORS",
]

"""
Contracts for the external collaborators the engine delegates to.

Prompt execution, tool invocation, requirement scoring and hint
generation all live outside the engine. Implementations may be plain
or async callables; the engine awaits whatever they return.
"""
import ast
import inspect
import logging
from typing import Any, Dict, List, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


async def maybe_await(value: Any) -> Any:
    """Await `value` if it is awaitable, otherwise return it unchanged"""
    if inspect.isawaitable(value):
        return await value
    return value


@runtime_checkable
class PromptRunner(Protocol):
    """Runs a registered prompt with string arguments and returns its output"""

    def run_prompt(self, prompt_id: str, args: Dict[str, str]) -> Any:
        ...


@runtime_checkable
class ToolInvoker(Protocol):
    """Invokes a named tool and returns its textual output"""

    def invoke_tool(self, tool_name: str, params: Dict[str, Any]) -> Any:
        ...


@runtime_checkable
class ConditionEvaluator(Protocol):
    """Evaluates a condition expression against the run's data"""

    def evaluate(self, expression: str, variables: Dict[str, Any]) -> Any:
        ...


# Requirement evaluators and hint generators are plain callables:
#   evaluator(requirement, content, context) -> RequirementResult | dict
#   hint_generator(requirement, result) -> list[str]


class ConditionSyntaxError(ValueError):
    """Expression uses syntax the condition evaluator does not allow"""
    pass


_ALLOWED_NODES = (
    ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.Not, ast.USub,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot, ast.Name, ast.Load, ast.Constant,
    ast.Subscript, ast.Attribute, ast.List, ast.Tuple, ast.BinOp, ast.Add,
    ast.Sub, ast.Mult, ast.Div, ast.Mod, ast.IfExp, ast.Call,
)

_ALLOWED_CALLS = {"len": len, "int": int, "float": float, "str": str, "bool": bool}


class ExpressionConditionEvaluator:
    """
    Default condition evaluator.

    Accepts a restricted Python expression (comparisons, boolean logic,
    arithmetic, subscripts, a few conversion calls) over the variables
    provided. Attribute access to dunder names is rejected.
    """

    def evaluate(self, expression: str, variables: Dict[str, Any]) -> bool:
        tree = self._parse(expression)
        code = compile(tree, "<condition>", "eval")
        namespace = {"__builtins__": {}, **_ALLOWED_CALLS, **variables}
        return bool(eval(code, namespace))

    def _parse(self, expression: str) -> ast.Expression:
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise ConditionSyntaxError(f"Invalid condition '{expression}': {e.msg}")

        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_NODES):
                raise ConditionSyntaxError(
                    f"Unsupported syntax in condition: {type(node).__name__}"
                )
            if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                raise ConditionSyntaxError(f"Private attribute access not allowed: {node.attr}")
            if isinstance(node, ast.Call):
                if not isinstance(node.func, ast.Name) or node.func.id not in _ALLOWED_CALLS:
                    raise ConditionSyntaxError("Only len/int/float/str/bool calls are allowed")
        return tree


def condition_variables(inputs: Dict[str, Any], results: Dict[str, str]) -> Dict[str, Any]:
    """
    Names visible to a condition: workflow inputs, completed step
    contents by step id, and both collections as `inputs` / `results`.
    """
    variables: Dict[str, Any] = {}
    variables.update(inputs)
    variables.update(results)
    variables["inputs"] = dict(inputs)
    variables["results"] = dict(results)
    return variables


def stringify_args(values: Dict[str, Any]) -> Dict[str, str]:
    return {key: str(value) for key, value in values.items()}


def join_contents(contents: List[str]) -> str:
    return "\n\n".join(contents)

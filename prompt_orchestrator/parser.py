"""
Parse workflow and gate definitions from dicts, YAML or JSON files.
Validates structure and provides clear error messages.
"""
import json
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError, WorkflowParseError
from .schema import GateDefinition, WorkflowDefinition


def validation_errors(exc: PydanticValidationError) -> List[ValidationError]:
    """Flatten a pydantic error into one ValidationError per problem"""
    errors = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err.get("loc", ()))
        errors.append(ValidationError(err.get("msg", "Invalid value"), path=path, code=err.get("type", "invalid")))
    return errors


def _describe(errors: List[ValidationError]) -> str:
    return "; ".join(f"{e.path or '<root>'}: {e.message}" for e in errors)


def parse_gate(data: Dict[str, Any]) -> GateDefinition:
    """
    Parse a single gate definition.

    Raises:
        WorkflowParseError: If required fields are missing or invalid
    """
    if not isinstance(data, dict):
        raise WorkflowParseError("Gate definition must be a dictionary")
    try:
        return GateDefinition.model_validate(data)
    except PydanticValidationError as e:
        errors = validation_errors(e)
        raise WorkflowParseError(f"Invalid gate definition: {_describe(errors)}", errors)


def parse_workflow(data: Dict[str, Any]) -> WorkflowDefinition:
    """
    Parse a workflow definition dict into a WorkflowDefinition.

    Both flat definitions and ones nested under a top-level
    `workflow` key are accepted.

    Raises:
        WorkflowParseError: If required fields are missing or invalid
    """
    if not isinstance(data, dict):
        raise WorkflowParseError("Workflow definition must be a dictionary at top level")

    workflow_data = data.get("workflow", data)
    try:
        return WorkflowDefinition.model_validate(workflow_data)
    except PydanticValidationError as e:
        errors = validation_errors(e)
        raise WorkflowParseError(f"Invalid workflow definition: {_describe(errors)}", errors)


def load_workflow_file(path: Union[str, Path]) -> WorkflowDefinition:
    """
    Parse a workflow YAML or JSON file into a WorkflowDefinition.

    Args:
        path: Path to a .yaml/.yml or .json file

    Raises:
        WorkflowParseError: If the file is missing, malformed or invalid
    """
    path = Path(path)
    if not path.exists():
        raise WorkflowParseError(f"Workflow file not found: {path}")

    content = path.read_text()
    if path.suffix == ".json":
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Invalid JSON: {e}")
    else:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Invalid YAML: {e}")

    return parse_workflow(data)

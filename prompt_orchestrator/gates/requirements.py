"""
Built-in requirement evaluators.

Each evaluator takes (requirement, content, context) and returns a
RequirementResult. Criteria keys are accepted in snake_case or the
camelCase form used by JSON gate definitions.
"""
import json
import re
from typing import Any, Callable, Dict, Optional

import yaml

from ..models import RequirementResult
from ..schema import GateRequirement

RequirementEvaluator = Callable[..., Any]

MARKDOWN_HEADER = re.compile(r"^#+\s+", re.MULTILINE)


def _criterion(criteria: Dict[str, Any], name: str, camel: Optional[str] = None, default: Any = None) -> Any:
    if name in criteria:
        return criteria[name]
    if camel and camel in criteria:
        return criteria[camel]
    return default


def content_length(requirement: GateRequirement, content: str, context: Any = None) -> RequirementResult:
    """Content length within optional `min` / `max` characters"""
    minimum = requirement.criteria.get("min")
    maximum = requirement.criteria.get("max")
    length = len(content)

    passed = True
    message = f"Content length: {length} characters"
    if minimum is not None and length < minimum:
        passed = False
        message += f" (minimum: {minimum})"
    if maximum is not None and length > maximum:
        passed = False
        message += f" (maximum: {maximum})"

    return RequirementResult(
        requirement_type="content_length",
        passed=passed,
        score=1.0 if passed else 0.0,
        message=message,
        details={"length": length, "min": minimum, "max": maximum},
    )


def keyword_presence(requirement: GateRequirement, content: str, context: Any = None) -> RequirementResult:
    """Fraction of `keywords` found in the content"""
    keywords = list(requirement.criteria.get("keywords", []))
    case_sensitive = _criterion(requirement.criteria, "case_sensitive", "caseSensitive", False)
    haystack = content if case_sensitive else content.lower()

    found, missing = [], []
    for keyword in keywords:
        needle = keyword if case_sensitive else keyword.lower()
        (found if needle in haystack else missing).append(keyword)

    passed = not missing
    score = len(found) / len(keywords) if keywords else 1.0
    if passed:
        message = f"All required keywords found: {', '.join(found)}"
    else:
        message = f"Missing keywords: {', '.join(missing)}"

    return RequirementResult(
        requirement_type="keyword_presence",
        passed=passed,
        score=score,
        message=message,
        details={"found_keywords": found, "missing_keywords": missing, "total": len(keywords)},
    )


def section_validation(requirement: GateRequirement, content: str, context: Any = None) -> RequirementResult:
    """Fraction of required `sections` (substrings) present"""
    sections = list(requirement.criteria.get("sections", []))

    found = [s for s in sections if s in content]
    missing = [s for s in sections if s not in content]

    passed = not missing
    score = len(found) / len(sections) if sections else 1.0
    if passed:
        message = f"All required sections found: {', '.join(found)}"
    else:
        message = f"Missing sections: {', '.join(missing)}"

    return RequirementResult(
        requirement_type="section_validation",
        passed=passed,
        score=score,
        message=message,
        details={"found_sections": found, "missing_sections": missing, "total": len(sections)},
    )


def format_validation(requirement: GateRequirement, content: str, context: Any = None) -> RequirementResult:
    """Check content is markdown, json or yaml according to `format`"""
    fmt = requirement.criteria.get("format")
    if fmt == "markdown":
        return _markdown(content)
    if fmt == "json":
        return _json(content)
    if fmt == "yaml":
        return _yaml(content)
    return RequirementResult(
        requirement_type="format_validation",
        passed=False,
        score=0.0,
        message=f"Unknown format: {fmt}",
        details={"format": fmt},
    )


def _markdown(content: str) -> RequirementResult:
    has_headers = bool(MARKDOWN_HEADER.search(content))
    has_paragraphs = "\n\n" in content
    passed = has_headers and has_paragraphs
    return RequirementResult(
        requirement_type="format_validation",
        passed=passed,
        score=1.0 if passed else 0.5,
        message="Valid markdown format detected" if passed else "Content lacks proper markdown structure",
        details={"format": "markdown", "has_headers": has_headers, "has_paragraphs": has_paragraphs},
    )


def _json(content: str) -> RequirementResult:
    try:
        json.loads(content)
    except json.JSONDecodeError as e:
        return RequirementResult(
            requirement_type="format_validation",
            passed=False,
            score=0.0,
            message=f"Invalid JSON: {e}",
            details={"format": "json"},
        )
    return RequirementResult(
        requirement_type="format_validation",
        passed=True,
        score=1.0,
        message="Valid JSON format",
        details={"format": "json"},
    )


def _yaml(content: str) -> RequirementResult:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        return RequirementResult(
            requirement_type="format_validation",
            passed=False,
            score=0.0,
            message=f"Invalid YAML: {e}",
            details={"format": "yaml"},
        )
    # plain scalars parse as YAML too; require a mapping or sequence
    passed = isinstance(data, (dict, list))
    return RequirementResult(
        requirement_type="format_validation",
        passed=passed,
        score=1.0 if passed else 0.0,
        message="Valid YAML structure" if passed else "Content does not appear to be YAML format",
        details={"format": "yaml"},
    )


BUILTIN_EVALUATORS: Dict[str, RequirementEvaluator] = {
    "content_length": content_length,
    "keyword_presence": keyword_presence,
    "format_validation": format_validation,
    "section_validation": section_validation,
}

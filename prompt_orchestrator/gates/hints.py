"""
Built-in hint generators: turn a requirement result into actionable
suggestions for improving the content.
"""
from typing import Any, Callable, Dict, List

from ..models import RequirementResult
from ..schema import GateRequirement

HintGenerator = Callable[..., Any]


def content_length_hints(requirement: GateRequirement, result: RequirementResult) -> List[str]:
    length = result.details.get("length")
    minimum = result.details.get("min")
    maximum = result.details.get("max")
    if length is None:
        return []
    if minimum is not None and length < minimum:
        return [f"Expand the content to at least {minimum} characters (currently {length})."]
    if maximum is not None and length > maximum:
        return [f"Shorten the content to at most {maximum} characters (currently {length})."]
    return []


def keyword_presence_hints(requirement: GateRequirement, result: RequirementResult) -> List[str]:
    return [f"Mention '{keyword}' in the content." for keyword in result.details.get("missing_keywords", [])]


def section_validation_hints(requirement: GateRequirement, result: RequirementResult) -> List[str]:
    return [f"Add a '{section}' section." for section in result.details.get("missing_sections", [])]


def format_validation_hints(requirement: GateRequirement, result: RequirementResult) -> List[str]:
    if result.passed:
        return []
    fmt = result.details.get("format")
    if fmt == "markdown":
        hints = []
        if not result.details.get("has_headers"):
            hints.append("Structure the content with markdown headers (e.g. '## Section').")
        if not result.details.get("has_paragraphs"):
            hints.append("Separate paragraphs with blank lines.")
        return hints
    if fmt == "json":
        return ["Return a single valid JSON document without surrounding prose."]
    if fmt == "yaml":
        return ["Return YAML with top-level 'key: value' entries or a list."]
    return [f"Use one of the supported formats: markdown, json, yaml (got {fmt!r})."]


BUILTIN_HINT_GENERATORS: Dict[str, HintGenerator] = {
    "content_length": content_length_hints,
    "keyword_presence": keyword_presence_hints,
    "format_validation": format_validation_hints,
    "section_validation": section_validation_hints,
}

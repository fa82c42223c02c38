"""
Tests for gate evaluation.

Tests cover:
- Weighted aggregation and the pass rule
- Hint generation
- Pluggable evaluators (sync, async, dict results, failures)
- Built-in requirement types
- Registry, statistics and history
"""

import pytest

from prompt_orchestrator.config import GateConfig
from prompt_orchestrator.errors import GateNotFoundError
from prompt_orchestrator.gates import GateEvaluator
from prompt_orchestrator.history import ExecutionHistory
from prompt_orchestrator.models import GateDecision, GateEvaluationResult, RequirementResult
from prompt_orchestrator.schema import FailureAction, GateDefinition, GateRequirement


def fixed_score(passed, score):
    """Evaluator plugin that always returns the same result"""
    def evaluate(requirement, content, context):
        return {"passed": passed, "score": score, "message": f"score {score}"}
    return evaluate


def gate(requirements, **kwargs):
    return GateDefinition(id=kwargs.pop("id", "quality"), requirements=requirements, **kwargs)


@pytest.fixture
def evaluator():
    return GateEvaluator()


class TestAggregation:
    """Test weighted scoring and the pass rule."""

    @pytest.mark.asyncio
    async def test_weighted_example_fails_threshold(self, evaluator):
        """0.3*0.9 + 0.7*0.2 = 0.41 < 0.7 fails even though the required requirement passed."""
        evaluator.register_evaluator("len", fixed_score(True, 0.9))
        evaluator.register_evaluator("keyword", fixed_score(False, 0.2))
        evaluator.register_hint_generator("len", lambda req, res: ["len hint"])
        evaluator.register_hint_generator("keyword", lambda req, res: ["keyword hint"])

        result = await evaluator.evaluate_definition(gate([
            GateRequirement(type="len", weight=0.3, required=True),
            GateRequirement(type="keyword", weight=0.7, required=False),
        ]), "content")

        assert result.score == pytest.approx(0.41)
        assert result.threshold == 0.7
        assert result.passed is False
        assert result.hints == ["len hint", "keyword hint"]

    @pytest.mark.asyncio
    async def test_zero_requirements_pass(self, evaluator):
        result = await evaluator.evaluate_definition(gate([]), "")
        assert result.passed is True
        assert result.score == 1.0
        assert result.hints == []

    @pytest.mark.asyncio
    async def test_failed_required_requirement_forces_failure(self, evaluator):
        evaluator.register_evaluator("zero", fixed_score(False, 0.0))
        evaluator.register_evaluator("perfect", fixed_score(True, 1.0))

        result = await evaluator.evaluate_definition(gate([
            GateRequirement(type="zero", weight=0.01, required=True),
            GateRequirement(type="perfect", weight=100.0),
        ]), "content")

        assert result.score > 0.99
        assert result.passed is False

    @pytest.mark.asyncio
    async def test_optional_failure_can_still_pass(self, evaluator):
        evaluator.register_evaluator("weak", fixed_score(False, 0.5))
        evaluator.register_evaluator("perfect", fixed_score(True, 1.0))

        result = await evaluator.evaluate_definition(gate([
            GateRequirement(type="weak", weight=1.0, required=False),
            GateRequirement(type="perfect", weight=3.0),
        ]), "content")

        assert result.score == pytest.approx(0.875)
        assert result.passed is True

    @pytest.mark.asyncio
    async def test_scores_are_clamped(self, evaluator):
        evaluator.register_evaluator("high", fixed_score(True, 1.5))
        evaluator.register_evaluator("low", fixed_score(False, -0.5))

        result = await evaluator.evaluate_definition(gate([
            GateRequirement(type="high", required=False),
            GateRequirement(type="low", required=False),
        ]), "content")

        scores = [r.score for r in result.requirement_results]
        assert scores == [1.0, 0.0]
        assert 0.0 <= result.score <= 1.0

    @pytest.mark.asyncio
    async def test_zero_total_weight_scores_zero(self, evaluator):
        evaluator.register_evaluator("perfect", fixed_score(True, 1.0))
        result = await evaluator.evaluate_definition(
            gate([GateRequirement(type="perfect", weight=0.0)]), "content"
        )
        assert result.score == 0.0
        assert result.passed is False

    @pytest.mark.asyncio
    async def test_gate_threshold_overrides_default(self, evaluator):
        evaluator.register_evaluator("half", fixed_score(True, 0.5))
        result = await evaluator.evaluate_definition(
            gate([GateRequirement(type="half")], threshold=0.5), "content"
        )
        assert result.passed is True

    @pytest.mark.asyncio
    async def test_configured_default_threshold(self):
        evaluator = GateEvaluator(GateConfig(default_threshold=0.4))
        evaluator.register_evaluator("half", fixed_score(True, 0.5))
        result = await evaluator.evaluate_definition(gate([GateRequirement(type="half")]), "content")
        assert result.threshold == 0.4
        assert result.passed is True

    @pytest.mark.asyncio
    async def test_duplicate_requirement_ids_both_count(self, evaluator):
        evaluator.register_evaluator("full", fixed_score(True, 1.0))
        evaluator.register_evaluator("none", fixed_score(False, 0.0))

        result = await evaluator.evaluate_definition(gate([
            GateRequirement(type="full", id="dup"),
            GateRequirement(type="none", id="dup", required=False),
        ]), "content")

        assert len(result.requirement_results) == 2
        assert result.score == pytest.approx(0.5)


class TestPlugins:
    """Test evaluator and hint generator plugins."""

    @pytest.mark.asyncio
    async def test_async_evaluator(self, evaluator):
        async def evaluate(requirement, content, context):
            return RequirementResult(requirement_type="async", passed=True, score=1.0)

        evaluator.register_evaluator("async", evaluate)
        result = await evaluator.evaluate_definition(gate([GateRequirement(type="async")]), "x")
        assert result.passed is True

    @pytest.mark.asyncio
    async def test_evaluator_exception_fails_requirement(self, evaluator):
        def broken(requirement, content, context):
            raise RuntimeError("scorer unavailable")

        evaluator.register_evaluator("broken", broken)
        result = await evaluator.evaluate_definition(gate([GateRequirement(type="broken")]), "x")

        requirement = result.requirement_results[0]
        assert requirement.passed is False
        assert requirement.score == 0.0
        assert "scorer unavailable" in requirement.message
        assert result.passed is False

    @pytest.mark.asyncio
    async def test_non_numeric_score_fails_requirement(self, evaluator):
        evaluator.register_evaluator("wordy", lambda req, content, ctx: {"passed": True, "score": "high"})

        result = await evaluator.evaluate_definition(gate([GateRequirement(type="wordy")]), "x")

        requirement = result.requirement_results[0]
        assert requirement.passed is False
        assert requirement.score == 0.0
        assert requirement.message.startswith("Evaluator error:")

    @pytest.mark.asyncio
    async def test_shared_result_instance_is_not_mutated(self, evaluator):
        """A plugin returning the same object for every call keeps per-requirement weights"""
        shared = RequirementResult(requirement_type="shared", passed=True, score=1.0)
        evaluator.register_evaluator("shared", lambda req, content, ctx: shared)

        result = await evaluator.evaluate_definition(
            gate([
                GateRequirement(type="shared", weight=2.0),
                GateRequirement(type="shared", weight=1.0, required=False),
            ]),
            "x",
        )

        assert [r.weight for r in result.requirement_results] == [2.0, 1.0]
        assert [r.required for r in result.requirement_results] == [True, False]
        assert shared.weight == 1.0
        assert shared.required is True

    @pytest.mark.asyncio
    async def test_unknown_requirement_type_fails(self, evaluator):
        result = await evaluator.evaluate_definition(gate([GateRequirement(type="mystery")]), "x")
        assert result.requirement_results[0].passed is False
        assert "mystery" in result.requirement_results[0].message

    @pytest.mark.asyncio
    async def test_hints_only_below_perfect_score(self, evaluator):
        evaluator.register_evaluator("perfect", fixed_score(True, 1.0))
        evaluator.register_hint_generator("perfect", lambda req, res: ["never shown"])

        result = await evaluator.evaluate_definition(gate([GateRequirement(type="perfect")]), "x")
        assert result.hints == []

    @pytest.mark.asyncio
    async def test_hints_generated_on_pass(self, evaluator):
        evaluator.register_evaluator("good", fixed_score(True, 0.8))
        evaluator.register_hint_generator("good", lambda req, res: ["polish it"])

        result = await evaluator.evaluate_definition(gate([GateRequirement(type="good")]), "x")
        assert result.passed is True
        assert result.hints == ["polish it"]

    @pytest.mark.asyncio
    async def test_runtime_overrides_apply(self, evaluator):
        requirement = GateRequirement(
            type="content_length",
            criteria={"min": 10},
            runtime_overrides={"desktop": {"min": 1}},
        )
        strict = await evaluator.evaluate_definition(gate([requirement]), "hi", {"runtime": "server"})
        relaxed = await evaluator.evaluate_definition(gate([requirement]), "hi", {"runtime": "desktop"})

        assert strict.passed is False
        assert relaxed.passed is True


class TestBuiltinRequirements:
    """Test the built-in requirement evaluators and their hints."""

    @pytest.mark.asyncio
    async def test_content_length_bounds(self, evaluator):
        requirement = GateRequirement(type="content_length", criteria={"min": 5, "max": 10})
        short = await evaluator.evaluate_definition(gate([requirement]), "abc")
        ok = await evaluator.evaluate_definition(gate([requirement]), "abcdef")
        long = await evaluator.evaluate_definition(gate([requirement]), "x" * 20)

        assert short.passed is False
        assert "minimum: 5" in short.requirement_results[0].message
        assert short.hints == ["Expand the content to at least 5 characters (currently 3)."]
        assert ok.passed is True
        assert long.passed is False
        assert "maximum: 10" in long.requirement_results[0].message

    @pytest.mark.asyncio
    async def test_keyword_presence_partial_score(self, evaluator):
        requirement = GateRequirement(
            type="keyword_presence", criteria={"keywords": ["Python", "asyncio"]}, required=False
        )
        result = await evaluator.evaluate_definition(gate([requirement]), "I like python.")

        req = result.requirement_results[0]
        assert req.score == 0.5
        assert req.passed is False
        assert req.details["missing_keywords"] == ["asyncio"]
        assert result.hints == ["Mention 'asyncio' in the content."]

    @pytest.mark.asyncio
    async def test_keyword_presence_case_sensitive(self, evaluator):
        requirement = GateRequirement(
            type="keyword_presence", criteria={"keywords": ["Python"], "caseSensitive": True}
        )
        result = await evaluator.evaluate_definition(gate([requirement]), "python")
        assert result.passed is False

    @pytest.mark.asyncio
    async def test_format_json(self, evaluator):
        requirement = GateRequirement(type="format_validation", criteria={"format": "json"})
        valid = await evaluator.evaluate_definition(gate([requirement]), '{"a": 1}')
        invalid = await evaluator.evaluate_definition(gate([requirement]), "{not json")

        assert valid.passed is True
        assert invalid.passed is False
        assert invalid.requirement_results[0].message.startswith("Invalid JSON")

    @pytest.mark.asyncio
    async def test_format_yaml(self, evaluator):
        requirement = GateRequirement(type="format_validation", criteria={"format": "yaml"})
        mapping = await evaluator.evaluate_definition(gate([requirement]), "name: test\nsteps: 3\n")
        scalar = await evaluator.evaluate_definition(gate([requirement]), "just a sentence")

        assert mapping.passed is True
        assert scalar.passed is False

    @pytest.mark.asyncio
    async def test_format_markdown(self, evaluator):
        requirement = GateRequirement(type="format_validation", criteria={"format": "markdown"})
        good = await evaluator.evaluate_definition(gate([requirement]), "# Title\n\nBody text")
        flat = await evaluator.evaluate_definition(gate([requirement]), "plain text")

        assert good.passed is True
        assert flat.requirement_results[0].score == 0.5
        assert len(flat.hints) == 2

    @pytest.mark.asyncio
    async def test_unknown_format(self, evaluator):
        requirement = GateRequirement(type="format_validation", criteria={"format": "xml"})
        result = await evaluator.evaluate_definition(gate([requirement]), "<a/>")
        assert result.passed is False
        assert "Unknown format" in result.requirement_results[0].message

    @pytest.mark.asyncio
    async def test_section_validation(self, evaluator):
        requirement = GateRequirement(
            type="section_validation", criteria={"sections": ["## Summary", "## Risks"]}
        )
        result = await evaluator.evaluate_definition(gate([requirement]), "## Summary\n\ntext")

        assert result.requirement_results[0].score == 0.5
        assert result.passed is False
        assert result.hints == ["Add a '## Risks' section."]


class TestRegistry:
    """Test gate registration, lookup and statistics."""

    def test_register_from_camel_case_dict(self, evaluator):
        errors = evaluator.register_gate({
            "id": "review",
            "name": "Review Gate",
            "failureAction": "skip",
            "requirements": [{"type": "content_length", "criteria": {"min": 1}}],
        })
        assert errors == []
        assert evaluator.get_gate("review").failure_action == FailureAction.SKIP

    def test_unknown_requirement_type_rejected(self, evaluator):
        errors = evaluator.register_gate(gate([GateRequirement(type="mystery")]))
        assert len(errors) == 1
        assert errors[0].code == "unknown_requirement_type"
        assert evaluator.get_gate("quality") is None

    def test_malformed_dict_rejected(self, evaluator):
        errors = evaluator.register_gate({"name": "no id", "threshold": 3})
        assert errors
        assert evaluator.list_gates() == []

    def test_unregister(self, evaluator):
        evaluator.register_gate(gate([]))
        assert evaluator.unregister_gate("quality") is True
        assert evaluator.unregister_gate("quality") is False

    @pytest.mark.asyncio
    async def test_evaluate_unknown_gate(self, evaluator):
        with pytest.raises(GateNotFoundError):
            await evaluator.evaluate("missing", "content")

    @pytest.mark.asyncio
    async def test_usage_statistics_and_history(self):
        history = ExecutionHistory()
        evaluator = GateEvaluator(history=history)
        evaluator.register_gate(gate([GateRequirement(type="content_length", criteria={"min": 3})]))

        await evaluator.evaluate("quality", "long enough")
        await evaluator.evaluate("quality", "no")

        stats = evaluator.get_gate_stats("quality")
        assert stats["evaluations"] == 2
        assert stats["passes"] == 1
        assert stats["failures"] == 1
        assert len(history.get_gate_evaluations("quality")) == 2

    def test_resolve_failure(self, evaluator):
        definition = gate([], failure_action=FailureAction.ROLLBACK)
        passed = GateEvaluationResult(gate_id="quality", passed=True, score=1.0, threshold=0.7)
        failed = GateEvaluationResult(gate_id="quality", passed=False, score=0.1, threshold=0.7)

        assert evaluator.resolve_failure(definition, passed) == GateDecision.PROCEED
        assert evaluator.resolve_failure(definition, failed) == GateDecision.ROLLBACK

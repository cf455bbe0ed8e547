"""
Tests for RAG Evaluation Module

Run with: pytest tests/test_evaluator.py -v
"""

import threading
from unittest.mock import Mock

import pytest

from config.settings import EvaluationConfig, LLMConfig
from ragcore.classifier import QueryCategory
from ragcore.deadline import Deadline
from ragcore.evaluator import (
    COMPLETENESS_SYSTEM_PROMPT,
    DEFAULT_CHECK,
    FAILED_CHECK,
    FAITHFULNESS_SYSTEM_PROMPT,
    RELEVANCE_SYSTEM_PROMPT,
    CheckResult,
    EvaluationResult,
    Evaluator,
    MetricLevel,
    compute_overall,
    format_grading_context,
    parse_check_result,
)
from ragcore.llm_service import BaseLLMProvider, Generator, LLMResponse
from ragcore.retriever import RetrievedContext


class GraderProvider(BaseLLMProvider):
    """Answers each grading prompt from a per-check script."""

    def __init__(self, faithfulness, relevance, completeness):
        self.responses = {
            FAITHFULNESS_SYSTEM_PROMPT: faithfulness,
            RELEVANCE_SYSTEM_PROMPT: relevance,
            COMPLETENESS_SYSTEM_PROMPT: completeness,
        }
        self.prompts = {}
        self._lock = threading.Lock()

    def generate(self, prompt, system_prompt=None, temperature=0.7, max_tokens=None, model=None):
        with self._lock:
            self.prompts[system_prompt] = prompt
        outcome = self.responses[system_prompt]
        if callable(outcome):
            outcome = outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        return LLMResponse(content=outcome, model="grader")

    @property
    def model_name(self):
        return "grader"


def make_evaluator(faithfulness, relevance, completeness, **config):
    provider = GraderProvider(faithfulness, relevance, completeness)
    generator = Generator(provider, LLMConfig(initial_delay=0), sleep=Mock())
    return Evaluator(generator, EvaluationConfig(**config)), provider


@pytest.fixture
def contexts():
    return [
        RetrievedContext(
            document_id="doc-1", chunk_index=0, text="Refunds take 30 days.",
            filename="policy.pdf", similarity=0.9,
        ),
        RetrievedContext(
            document_id="doc-2", chunk_index=4, text="x" * 1000,
            filename="faq.md", similarity=0.7,
        ),
    ]


class TestParseCheckResult:
    """Tests for tolerant grader output parsing."""

    def test_plain(self):
        assert parse_check_result('{"score": 0.7, "issues": ["vague"]}') == CheckResult(0.7, ["vague"])

    @pytest.mark.parametrize("raw,expected", [(5, 1.0), (-3, 0.0), ("0.25", 0.25), (1, 1.0)])
    def test_score_clamped(self, raw, expected):
        result = parse_check_result(f'{{"score": {raw!r}, "issues": []}}'.replace("'", '"'))
        assert result.score == expected

    def test_non_string_issues_dropped(self):
        result = parse_check_result('{"score": 0.5, "issues": ["a", 1, null, {"b": 2}, "c"]}')
        assert result.issues == ["a", "c"]

    def test_issues_not_a_list(self):
        assert parse_check_result('{"score": 0.5, "issues": "bad"}').issues == []

    def test_embedded_in_prose(self):
        text = 'Here is my grade {oops} and then {"score": 0.9, "issues": []} thanks'
        assert parse_check_result(text) == CheckResult(0.9, [])

    def test_first_object_wins(self):
        text = '{"score": 0.2, "issues": []} {"score": 0.8, "issues": []}'
        assert parse_check_result(text).score == 0.2

    @pytest.mark.parametrize("text", [
        "no json here",
        '{"issues": ["missing score"]}',
        '{"score": "high"}',
        '{"score": true}',
        '{"score": null}',
        '{"score": NaN}',
        "",
    ])
    def test_failures(self, text):
        assert parse_check_result(text) == FAILED_CHECK

    def test_failed_check_shape(self):
        assert FAILED_CHECK == CheckResult(0.0, ["evaluation failed"])


class TestOverall:

    def test_weighting(self):
        assert compute_overall(0.8, 0.6, 1.0) == pytest.approx(0.78)

    def test_result_properties(self):
        result = EvaluationResult.from_checks(
            CheckResult(0.8, []), CheckResult(0.6, ["gap"]), CheckResult(1.0, [])
        )

        assert result.overall == pytest.approx(0.78)
        assert result.level == MetricLevel.GOOD
        assert result.passed
        assert result.issues == ["gap"]
        assert result.to_dict()["overall"] == 0.78

    @pytest.mark.parametrize("score,level", [
        (0.85, MetricLevel.EXCELLENT),
        (0.6, MetricLevel.GOOD),
        (0.4, MetricLevel.FAIR),
        (0.1, MetricLevel.POOR),
    ])
    def test_levels(self, score, level):
        assert MetricLevel.for_score(score) == level


class TestGradingPrompts:

    def test_context_truncated_and_labelled(self, contexts):
        text = format_grading_context(contexts, char_limit=600)

        first, second = text.split("\n\n---\n\n")
        assert first == "[Source 1: policy.pdf]\nRefunds take 30 days."
        assert second == "[Source 2: faq.md]\n" + "x" * 600


class TestEvaluator:
    """Tests for concurrent checks with isolation."""

    def test_all_checks(self, contexts):
        evaluator, provider = make_evaluator(
            '{"score": 0.8, "issues": []}',
            '{"score": 0.6, "issues": ["partial"]}',
            '{"score": 1.0, "issues": []}',
        )

        result = evaluator.evaluate("Refund window?", "30 days [1].", contexts, QueryCategory.SIMPLE)

        assert result.overall == pytest.approx(0.78)
        assert result.relevance.issues == ["partial"]
        assert not result.skipped
        assert 'User Query: "Refund window?"' in provider.prompts[FAITHFULNESS_SYSTEM_PROMPT]
        assert "Source Context:" not in provider.prompts[RELEVANCE_SYSTEM_PROMPT]

    def test_conversational_skipped(self, contexts):
        evaluator, provider = make_evaluator("never", "never", "never")

        result = evaluator.evaluate("Thanks!", "You're welcome", contexts, QueryCategory.CONVERSATIONAL)

        assert result.overall == 1.0
        assert result.issues == []
        assert result.faithfulness == DEFAULT_CHECK
        assert provider.prompts == {}

    def test_no_contexts_skipped(self):
        evaluator, provider = make_evaluator("never", "never", "never")

        result = evaluator.evaluate("q", "a", [], QueryCategory.SIMPLE)

        assert result.overall == 1.0
        assert provider.prompts == {}

    def test_disabled_skipped(self, contexts):
        evaluator, provider = make_evaluator("never", "never", "never", enabled=False)

        assert evaluator.evaluate("q", "a", contexts, QueryCategory.SIMPLE).overall == 1.0

    def test_one_check_failing_is_isolated(self, contexts):
        evaluator, _ = make_evaluator(
            ValueError("grader exploded"),
            '{"score": 1.0, "issues": []}',
            "not json",
        )

        result = evaluator.evaluate("q", "a", contexts, QueryCategory.COMPLEX)

        assert result.faithfulness == FAILED_CHECK
        assert result.relevance == CheckResult(1.0, [])
        assert result.completeness == FAILED_CHECK
        assert result.overall == pytest.approx(0.35)

    def test_unfinished_checks_fail_at_deadline(self, contexts):
        release = threading.Event()

        def slow():
            release.wait(5)
            return '{"score": 1.0, "issues": []}'

        evaluator, _ = make_evaluator(slow, '{"score": 0.5, "issues": []}', slow)
        try:
            result = evaluator.evaluate(
                "q", "a", contexts, QueryCategory.SIMPLE, deadline=Deadline.after(0.3)
            )
        finally:
            release.set()

        assert result.faithfulness == FAILED_CHECK
        assert result.relevance.score == 0.5
        assert result.completeness == FAILED_CHECK


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

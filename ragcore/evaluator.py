"""
RAG Evaluation Module

Post-hoc, LLM-graded quality checks for a generated answer.

Checks:
1. Faithfulness: does the answer avoid claims the contexts do not support?
2. Relevance: does the answer address the query?
3. Completeness: does the answer cover what the contexts support?

Each check returns a CheckResult(score in [0, 1], issues). The overall score
is the fixed weighting

    overall = 0.40 x faithfulness + 0.35 x relevance + 0.25 x completeness

Design:
- Skipped entirely (perfect default) for conversational queries and when
  there are no contexts; there is nothing to grade against.
- The three checks run concurrently in a 3-worker thread pool. A check that
  raises, returns garbage, or is still running when the deadline passes
  degrades to FAILED_CHECK on its own; siblings are unaffected and
  evaluate() itself never raises.

Usage:
    evaluator = Evaluator(generator)
    result = evaluator.evaluate(
        query="What is the refund window?",
        answer="Refunds are accepted within 30 days [1].",
        contexts=retrieval.contexts,
        category=retrieval.category,
    )
    print(result.overall, result.level.value)
"""

import json
import logging
import math
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from config.settings import get_settings, EvaluationConfig
from ragcore.classifier import QueryCategory
from ragcore.deadline import Deadline
from ragcore.llm_service import Generator
from ragcore.retriever import RetrievedContext

logger = logging.getLogger(__name__)

FAITHFULNESS_WEIGHT = 0.40
RELEVANCE_WEIGHT = 0.35
COMPLETENESS_WEIGHT = 0.25

EVALUATION_FAILED = "evaluation failed"


class MetricLevel(Enum):
    """Quality level based on metric scores."""
    EXCELLENT = "excellent"  # >= 0.8
    GOOD = "good"           # >= 0.6
    FAIR = "fair"           # >= 0.4
    POOR = "poor"           # < 0.4

    @classmethod
    def for_score(cls, score: float) -> "MetricLevel":
        if score >= 0.8:
            return cls.EXCELLENT
        elif score >= 0.6:
            return cls.GOOD
        elif score >= 0.4:
            return cls.FAIR
        return cls.POOR


@dataclass(frozen=True)
class CheckResult:
    score: float
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"score": round(self.score, 4), "issues": list(self.issues)}


DEFAULT_CHECK = CheckResult(1.0, [])
FAILED_CHECK = CheckResult(0.0, [EVALUATION_FAILED])


def compute_overall(faithfulness: float, relevance: float, completeness: float) -> float:
    return (
        faithfulness * FAITHFULNESS_WEIGHT
        + relevance * RELEVANCE_WEIGHT
        + completeness * COMPLETENESS_WEIGHT
    )


@dataclass
class EvaluationResult:
    """Scores for one generated answer."""

    faithfulness: CheckResult
    relevance: CheckResult
    completeness: CheckResult
    overall: float
    skipped: bool = False

    @classmethod
    def perfect(cls) -> "EvaluationResult":
        return cls(DEFAULT_CHECK, DEFAULT_CHECK, DEFAULT_CHECK, 1.0, skipped=True)

    @classmethod
    def from_checks(
        cls,
        faithfulness: CheckResult,
        relevance: CheckResult,
        completeness: CheckResult,
    ) -> "EvaluationResult":
        return cls(
            faithfulness=faithfulness,
            relevance=relevance,
            completeness=completeness,
            overall=compute_overall(faithfulness.score, relevance.score, completeness.score),
        )

    @property
    def level(self) -> MetricLevel:
        return MetricLevel.for_score(self.overall)

    @property
    def passed(self) -> bool:
        """Check if evaluation passed minimum thresholds."""
        return (
            self.faithfulness.score >= 0.5 and
            self.relevance.score >= 0.4 and
            self.overall >= 0.5
        )

    @property
    def issues(self) -> List[str]:
        return self.faithfulness.issues + self.relevance.issues + self.completeness.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "faithfulness": self.faithfulness.to_dict(),
            "relevance": self.relevance.to_dict(),
            "completeness": self.completeness.to_dict(),
            "overall": round(self.overall, 4),
            "level": self.level.value,
            "passed": self.passed,
        }

    def __str__(self) -> str:
        return (
            f"EvaluationResult(\n"
            f"  faithfulness={self.faithfulness.score:.2f}\n"
            f"  relevance={self.relevance.score:.2f}\n"
            f"  completeness={self.completeness.score:.2f}\n"
            f"  overall={self.overall:.2f} ({self.level.value})\n"
            f"  passed={self.passed}\n"
            f")"
        )


def _coerce_score(value: Any) -> float:
    # bool is an int subclass; "true" is not a score
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"Invalid score: {value!r}")
    score = float(value)
    if math.isnan(score):
        raise ValueError("Score is NaN")
    return max(0.0, min(1.0, score))


def parse_check_result(text: str) -> CheckResult:
    """
    Parse a grader response into a CheckResult.

    The first JSON object carrying a valid ``score`` wins. Scores are
    clamped to [0, 1] and non-string issues are dropped. Anything
    unparseable yields FAILED_CHECK; this function never raises.
    """
    if not isinstance(text, str):
        return FAILED_CHECK

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue

        if isinstance(parsed, dict) and "score" in parsed:
            try:
                score = _coerce_score(parsed["score"])
            except ValueError:
                return FAILED_CHECK
            raw_issues = parsed.get("issues")
            issues = (
                [i for i in raw_issues if isinstance(i, str)]
                if isinstance(raw_issues, list) else []
            )
            return CheckResult(score, issues)

        start = text.find("{", start + 1)

    return FAILED_CHECK


# ---------------------------------------------------------------------------
# Grading prompts
# ---------------------------------------------------------------------------

_RESPONSE_FORMAT = """Respond with ONLY valid JSON:
{"score": 0.0-1.0, "issues": ["specific issue 1", "specific issue 2"]}

If there are no issues, return an empty issues array."""

FAITHFULNESS_SYSTEM_PROMPT = """You are a faithfulness evaluator for a RAG (Retrieval-Augmented Generation) system. Your job is to check whether an AI response is grounded in the provided source context.

Score the response on a scale of 0.0 to 1.0:
- 1.0 = Every claim in the response is supported by the provided context
- 0.7-0.9 = Mostly grounded, with minor unsupported details or reasonable inferences
- 0.4-0.6 = Mix of supported and unsupported claims
- 0.1-0.3 = Mostly unsupported or fabricated information
- 0.0 = Completely hallucinated with no basis in context

Check for:
- Claims not present in any source document
- Fabricated statistics, dates, or names
- Misattributed information (correct info, wrong source)
- Invented citations or references

""" + _RESPONSE_FORMAT

RELEVANCE_SYSTEM_PROMPT = """You are a relevance evaluator for a RAG system. Your job is to check whether an AI response actually answers the user's question.

Score the response on a scale of 0.0 to 1.0:
- 1.0 = Directly and fully answers the question
- 0.7-0.9 = Answers the main question with minor gaps
- 0.4-0.6 = Partially answers or addresses only some aspects
- 0.1-0.3 = Tangentially related but doesn't answer the question
- 0.0 = Completely off-topic or non-responsive

Check for:
- Does it address what was actually asked?
- Is it too generic or vague?
- Does it misinterpret the question?
- Does it provide useful, actionable information?

""" + _RESPONSE_FORMAT

COMPLETENESS_SYSTEM_PROMPT = """You are a completeness evaluator for a RAG system. Your job is to check whether an AI response covers the key information available in the source context.

Score the response on a scale of 0.0 to 1.0:
- 1.0 = Covers all relevant information from the context
- 0.7-0.9 = Covers most key points, minor omissions
- 0.4-0.6 = Covers some key points but misses significant information
- 0.1-0.3 = Barely touches on the available information
- 0.0 = Ignores all relevant context

Check for:
- Important facts or points from the context that were omitted
- Key details that would improve the answer
- Relevant sections or documents that were ignored

""" + _RESPONSE_FORMAT


def format_grading_context(contexts: Sequence[RetrievedContext], char_limit: int = 600) -> str:
    return "\n\n---\n\n".join(
        f"[Source {i + 1}: {ctx.filename}]\n{ctx.text[:char_limit]}"
        for i, ctx in enumerate(contexts)
    )


def build_faithfulness_prompt(query: str, answer: str, context_text: str, answer_limit: int = 1500) -> str:
    return (
        f'User Query: "{query}"\n\n'
        f"AI Response:\n{answer[:answer_limit]}\n\n"
        f"Source Context:\n{context_text}\n\n"
        f"Evaluate faithfulness."
    )


def build_relevance_prompt(query: str, answer: str, answer_limit: int = 1500) -> str:
    return (
        f'User Query: "{query}"\n\n'
        f"AI Response:\n{answer[:answer_limit]}\n\n"
        f"Evaluate relevance."
    )


def build_completeness_prompt(query: str, answer: str, context_text: str, answer_limit: int = 1500) -> str:
    return (
        f'User Query: "{query}"\n\n'
        f"AI Response:\n{answer[:answer_limit]}\n\n"
        f"Source Context:\n{context_text}\n\n"
        f"Evaluate completeness."
    )


class Evaluator:
    """
    Runs the three grading checks concurrently.

    Example:
        evaluator = Evaluator(generator)
        result = evaluator.evaluate(query, answer, contexts, QueryCategory.SIMPLE)
        if not result.passed:
            logger.warning(f"Low quality answer: {result.issues}")
    """

    MAX_WORKERS = 3

    def __init__(self, generator: Generator, config: Optional[EvaluationConfig] = None):
        self.generator = generator
        self.config = config or get_settings().evaluation

    def should_skip(self, category: QueryCategory, contexts: Sequence[RetrievedContext]) -> bool:
        return (
            not self.config.enabled
            or category == QueryCategory.CONVERSATIONAL
            or not contexts
        )

    def run_check(self, name: str, system_prompt: str, user_prompt: str, deadline: Deadline) -> CheckResult:
        """One grading call. Never raises."""
        options = self.generator.internal_options(
            max_tokens=self.config.max_tokens,
            timeout=self.config.timeout,
        )
        try:
            response = self.generator.generate(
                system_prompt, user_prompt, options=options, deadline=deadline
            )
        except Exception as e:
            logger.error(f"Validation check {name} failed: {e}")
            return FAILED_CHECK

        result = parse_check_result(response.content)
        if result is FAILED_CHECK:
            logger.warning(f"Validation check {name} returned an unparseable response")
        return result

    def evaluate(
        self,
        query: str,
        answer: str,
        contexts: Sequence[RetrievedContext],
        category: QueryCategory,
        deadline: Optional[Deadline] = None,
    ) -> EvaluationResult:
        """
        Grade ``answer`` against ``contexts``.

        Args:
            query: The user's (sanitized) question
            answer: Generated answer text
            contexts: Contexts the answer was generated from
            category: Query category; conversational skips grading
            deadline: End-to-end query budget; checks still running when it
                expires count as failed

        Returns:
            EvaluationResult. Never raises.
        """
        if self.should_skip(category, contexts):
            logger.debug("Skipping evaluation")
            return EvaluationResult.perfect()

        deadline = deadline or Deadline.none()
        context_text = format_grading_context(contexts, self.config.context_char_limit)
        limit = self.config.answer_char_limit

        checks = {
            "faithfulness": (
                FAITHFULNESS_SYSTEM_PROMPT,
                build_faithfulness_prompt(query, answer, context_text, limit),
            ),
            "relevance": (
                RELEVANCE_SYSTEM_PROMPT,
                build_relevance_prompt(query, answer, limit),
            ),
            "completeness": (
                COMPLETENESS_SYSTEM_PROMPT,
                build_completeness_prompt(query, answer, context_text, limit),
            ),
        }

        executor = ThreadPoolExecutor(max_workers=self.MAX_WORKERS, thread_name_prefix="evaluator")
        try:
            futures = {
                name: executor.submit(self.run_check, name, system, user, deadline)
                for name, (system, user) in checks.items()
            }
            wait(futures.values(), timeout=deadline.remaining())
        finally:
            # Unfinished checks are abandoned, not awaited
            executor.shutdown(wait=False, cancel_futures=True)

        results = {}
        for name, future in futures.items():
            if future.done() and not future.cancelled():
                results[name] = future.result()
            else:
                logger.error(f"Validation check {name} did not finish before the deadline")
                results[name] = FAILED_CHECK

        evaluation = EvaluationResult.from_checks(
            results["faithfulness"], results["relevance"], results["completeness"]
        )
        logger.info(
            f"Evaluation scores: faithfulness {evaluation.faithfulness.score:.2f}, "
            f"relevance {evaluation.relevance.score:.2f}, "
            f"completeness {evaluation.completeness.score:.2f}, "
            f"overall {evaluation.overall:.2f}"
        )
        return evaluation

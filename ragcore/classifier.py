"""
Query Classifier Module

Labels an incoming query so the pipeline knows whether retrieval and
evaluation should run at all.

Categories:
- conversational: greetings, thanks, rephrasing requests; no retrieval
- simple: a direct factual question answered from one retrieval
- complex: comparison, synthesis or multi-part questions

simple and complex are both knowledge-seeking. The classifier makes a single
LLM call; if the call or the parse fails it falls back to "simple", so a
broken classifier never blocks a knowledge-seeking answer.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ragcore.deadline import Deadline
from ragcore.errors import DeadlineExceeded
from ragcore.llm_service import Generator
from ragcore.security import INSTRUCTION_ANCHOR, sanitize_for_prompt, wrap_user_input

logger = logging.getLogger(__name__)


class QueryCategory(str, Enum):
    CONVERSATIONAL = "conversational"
    SIMPLE = "simple"
    COMPLEX = "complex"

    @property
    def is_knowledge_seeking(self) -> bool:
        return self is not QueryCategory.CONVERSATIONAL


CLASSIFIER_SYSTEM_PROMPT = """You are a query classifier for a RAG (Retrieval-Augmented Generation) system. Your job is to categorize user queries into exactly one of three categories.

Categories:
1. "simple": A direct factual question that can be answered with a single document retrieval. Examples: "What is X?", "How does Y work?", "What are the requirements for Z?"
2. "complex": A query requiring multiple retrievals, comparison, synthesis, or multi-part answers. Examples: "Compare A and B", "Summarize everything about topic Z", "List all policies and how they interact"
3. "conversational": No document retrieval needed. Greetings, thanks, requests to rephrase, clarifications about previous responses, or meta-questions about the assistant itself. Examples: "Thanks!", "Can you rephrase that?", "Hello", "What did you mean by that?"

Rules:
- If the user references "that" or "it" referring to a previous assistant response and is asking for clarification or rephrasing, classify as "conversational"
- If the user references "that" but asks a NEW question about it requiring document lookup, classify as "simple" or "complex"
- When in doubt between simple and complex, prefer "simple"
- Always respond with valid JSON only

Respond with a JSON object:
{"category": "simple"|"complex"|"conversational", "reasoning": "brief explanation"}""" + INSTRUCTION_ANCHOR

# Turns of history shown to the classifier, and characters per turn
HISTORY_TURNS = 6
HISTORY_TURN_CHARS = 200


@dataclass
class ClassificationResult:
    category: QueryCategory
    reasoning: str = ""
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "reasoning": self.reasoning,
            "fallback": self.fallback,
        }


def build_classifier_user_prompt(query: str, history: Optional[List[Dict[str, str]]] = None) -> str:
    """Recent history plus the wrapped, sanitized query."""
    recent = (history or [])[-HISTORY_TURNS:]
    history_text = ""
    if recent:
        lines = "\n".join(
            wrap_user_input(
                f"{turn['role']}: {sanitize_for_prompt(turn['content'], HISTORY_TURN_CHARS)}"
            )
            for turn in recent
        )
        history_text = f"Recent conversation:\n{lines}\n\n"

    return (
        f"{history_text}Current user query:\n"
        f"{wrap_user_input(sanitize_for_prompt(query))}\n\n"
        f"Classify this query."
    )


def parse_classification(text: str) -> ClassificationResult:
    """
    Read the first JSON object in ``text``.

    Raises:
        ValueError: if no object is found or the category is unknown
    """
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(parsed, dict):
            category = QueryCategory(str(parsed.get("category", "")).strip().lower())
            reasoning = parsed.get("reasoning")
            return ClassificationResult(
                category=category,
                reasoning=reasoning if isinstance(reasoning, str) else "",
            )
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in classifier response")


class QueryClassifier:
    """
    LLM-backed query classifier.

    Example:
        classifier = QueryClassifier(generator)
        result = classifier.classify("Thanks, that helped!")
        result.category  # QueryCategory.CONVERSATIONAL
    """

    def __init__(self, generator: Generator, timeout: Optional[float] = 30.0):
        self.generator = generator
        self.timeout = timeout

    def classify(
        self,
        query: str,
        history: Optional[List[Dict[str, str]]] = None,
        deadline: Optional[Deadline] = None,
    ) -> ClassificationResult:
        """
        Classify ``query``. Never raises except when the deadline has passed.
        """
        options = self.generator.internal_options(timeout=self.timeout, max_retries=0)
        try:
            response = self.generator.generate(
                CLASSIFIER_SYSTEM_PROMPT,
                build_classifier_user_prompt(query, history),
                options=options,
                deadline=deadline,
            )
            result = parse_classification(response.content)
        except DeadlineExceeded:
            raise
        except Exception as e:
            logger.error(f"Query classification failed, defaulting to simple: {e}")
            return ClassificationResult(
                category=QueryCategory.SIMPLE,
                reasoning="Classification failed, using default",
                fallback=True,
            )

        logger.info(f"Query classified as {result.category.value}")
        return result

"""
Query Decomposer Module

Splits a complex query (comparison, synthesis, multi-part) into 2-4 focused
sub-queries, each answerable by one retrieval, plus an instruction telling
the answer model how to combine what comes back.

Like the classifier this is one LLM call that never blocks an answer: on any
failure or unusable response the original query becomes the only sub-query.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ragcore.deadline import Deadline
from ragcore.errors import DeadlineExceeded
from ragcore.llm_service import Generator
from ragcore.security import INSTRUCTION_ANCHOR, sanitize_for_prompt, wrap_user_input

logger = logging.getLogger(__name__)

MAX_SUB_QUERIES = 4

DEFAULT_SYNTHESIS_INSTRUCTION = (
    "Synthesize the information from all retrieved sources to answer the query comprehensively."
)
FALLBACK_SYNTHESIS_INSTRUCTION = "Answer the query based on the retrieved context."

DECOMPOSER_SYSTEM_PROMPT = """You are a query decomposition assistant for a RAG system. Given a complex user query, break it into 2-4 focused sub-queries that can each be answered with a single document retrieval.

Rules:
- Each sub-query should be a clear, self-contained search query
- Sub-queries should collectively cover all aspects of the original query
- Decide if sub-queries can run in parallel (independent) or must run sequentially (later ones depend on earlier results)
- Provide a synthesis instruction explaining how to combine results into a final answer
- Generate at most 4 sub-queries
- Always respond with valid JSON only

Respond with a JSON object:
{"subQueries": ["query1", "query2", ...], "strategy": "parallel"|"sequential", "synthesisInstruction": "how to combine results"}""" + INSTRUCTION_ANCHOR


class DecompositionStrategy(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass
class Decomposition:
    sub_queries: List[str] = field(default_factory=list)
    strategy: DecompositionStrategy = DecompositionStrategy.PARALLEL
    synthesis_instruction: str = DEFAULT_SYNTHESIS_INSTRUCTION
    fallback: bool = False

    @classmethod
    def single(cls, query: str) -> "Decomposition":
        """The fallback: search once with the original query."""
        return cls(
            sub_queries=[query],
            synthesis_instruction=FALLBACK_SYNTHESIS_INSTRUCTION,
            fallback=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub_queries": list(self.sub_queries),
            "strategy": self.strategy.value,
            "synthesis_instruction": self.synthesis_instruction,
            "fallback": self.fallback,
        }


def build_decomposer_user_prompt(query: str) -> str:
    return (
        f"Complex query:\n"
        f"{wrap_user_input(sanitize_for_prompt(query))}\n\n"
        f"Decompose this into focused sub-queries."
    )


def parse_decomposition(text: str) -> Decomposition:
    """
    Read the first JSON object in ``text`` that lists sub-queries.

    Blank and repeated sub-queries are dropped and at most MAX_SUB_QUERIES
    are kept. An unknown strategy reads as parallel.

    Raises:
        ValueError: if no object with at least one usable sub-query is found
    """
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(parsed, dict) and isinstance(parsed.get("subQueries"), list):
            return _decomposition_from(parsed)
        start = text.find("{", start + 1)
    raise ValueError("No JSON object with subQueries found in decomposer response")


def _decomposition_from(parsed: Dict[str, Any]) -> Decomposition:
    sub_queries: List[str] = []
    for item in parsed["subQueries"]:
        if not isinstance(item, str):
            continue
        cleaned = item.strip()
        if cleaned and cleaned not in sub_queries:
            sub_queries.append(cleaned)
    if not sub_queries:
        raise ValueError("Decomposer returned no usable sub-queries")

    strategy = DecompositionStrategy.PARALLEL
    if str(parsed.get("strategy", "")).strip().lower() == DecompositionStrategy.SEQUENTIAL.value:
        strategy = DecompositionStrategy.SEQUENTIAL

    instruction = parsed.get("synthesisInstruction")
    if not isinstance(instruction, str) or not instruction.strip():
        instruction = DEFAULT_SYNTHESIS_INSTRUCTION

    return Decomposition(
        sub_queries=sub_queries[:MAX_SUB_QUERIES],
        strategy=strategy,
        synthesis_instruction=instruction.strip(),
    )


class QueryDecomposer:
    """
    LLM-backed query decomposition.

    Example:
        decomposer = QueryDecomposer(generator)
        plan = decomposer.decompose("Compare the refund and warranty policies")
        plan.sub_queries  # ["refund policy terms", "warranty coverage terms"]
    """

    def __init__(self, generator: Generator, timeout: Optional[float] = 30.0, max_tokens: int = 512):
        self.generator = generator
        self.timeout = timeout
        self.max_tokens = max_tokens

    def decompose(self, query: str, deadline: Optional[Deadline] = None) -> Decomposition:
        """Plan sub-queries for ``query``. Only a passed deadline raises."""
        options = self.generator.internal_options(
            max_tokens=self.max_tokens, timeout=self.timeout, max_retries=0
        )
        try:
            response = self.generator.generate(
                DECOMPOSER_SYSTEM_PROMPT,
                build_decomposer_user_prompt(query),
                options=options,
                deadline=deadline,
            )
            plan = parse_decomposition(response.content)
        except DeadlineExceeded:
            raise
        except Exception as e:
            logger.error(f"Query decomposition failed, using original query: {e}")
            return Decomposition.single(query)

        logger.info(
            f"Decomposed into {len(plan.sub_queries)} sub-queries "
            f"({plan.strategy.value}): {plan.sub_queries}"
        )
        return plan

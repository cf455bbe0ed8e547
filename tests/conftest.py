"""
Shared fakes for the pipeline tests.

Nothing here touches the network or downloads a model: the language model is
scripted per system prompt and embeddings are keyword-driven unit vectors.
"""

import json
import threading

import numpy as np
import pytest

from config.settings import EmbeddingConfig, LLMConfig
from ragcore.classifier import CLASSIFIER_SYSTEM_PROMPT
from ragcore.decomposer import DECOMPOSER_SYSTEM_PROMPT
from ragcore.embeddings import BaseEmbeddingProvider, EmbeddingService
from ragcore.evaluator import (
    COMPLETENESS_SYSTEM_PROMPT,
    FAITHFULNESS_SYSTEM_PROMPT,
    RELEVANCE_SYSTEM_PROMPT,
)
from ragcore.llm_service import BaseLLMProvider, Generator, LLMResponse

GRADER_PROMPTS = (FAITHFULNESS_SYSTEM_PROMPT, RELEVANCE_SYSTEM_PROMPT, COMPLETENESS_SYSTEM_PROMPT)
INTERNAL_PROMPTS = (CLASSIFIER_SYSTEM_PROMPT, DECOMPOSER_SYSTEM_PROMPT) + GRADER_PROMPTS

KEYWORDS = ("refund", "shipping", "warranty")


class KeywordEmbedder(BaseEmbeddingProvider):
    """384-d vectors with one axis per keyword found in the text."""

    def embed_text(self, text):
        vector = np.full(384, 0.01, dtype=np.float32)
        lowered = text.lower()
        for axis, word in enumerate(KEYWORDS):
            if word in lowered:
                vector[axis] = 1.0
        return vector.tolist()

    def embed_batch(self, texts):
        return [self.embed_text(t) for t in texts]

    @property
    def dimension(self):
        return 384

    @property
    def model_name(self):
        return "keyword"


class ScriptedLLM(BaseLLMProvider):
    """Routes each call by system prompt: classifier, decomposer, grader or answer."""

    def __init__(self):
        self.category = "simple"
        self.decomposition = json.dumps({
            "subQueries": ["refund window", "warranty coverage"],
            "strategy": "parallel",
            "synthesisInstruction": "Contrast the refund and warranty terms.",
        })
        self.answer = "Refunds are issued within 30 days [1]."
        self.grade = '{"score": 0.9, "issues": []}'
        self.answer_error = None
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, prompt, system_prompt=None, temperature=0.7, max_tokens=None, model=None):
        with self._lock:
            self.calls.append((system_prompt, prompt))

        if system_prompt == CLASSIFIER_SYSTEM_PROMPT:
            content = json.dumps({"category": self.category, "reasoning": "scripted"})
        elif system_prompt == DECOMPOSER_SYSTEM_PROMPT:
            content = self.decomposition
        elif system_prompt in GRADER_PROMPTS:
            content = self.grade
        else:
            if self.answer_error is not None:
                raise self.answer_error
            content = self.answer
        return LLMResponse(content=content, model="scripted-llm", usage={"total_tokens": 42})

    @property
    def model_name(self):
        return "scripted-llm"

    def answer_calls(self):
        return [
            (system, user) for system, user in self.calls
            if system not in INTERNAL_PROMPTS
        ]

    def grader_calls(self):
        return [call for call in self.calls if call[0] in GRADER_PROMPTS]


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def generator(llm):
    return Generator(llm, LLMConfig(initial_delay=0, max_delay=0), sleep=lambda _: None)


@pytest.fixture
def embedding_service():
    return EmbeddingService(EmbeddingConfig(), providers={"local": KeywordEmbedder()})

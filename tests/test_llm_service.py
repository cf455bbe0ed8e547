"""
Tests for LLM Service module.

Run with: pytest tests/test_llm_service.py -v

Provider SDK calls are mocked; no network access is needed.
"""

import threading
from unittest.mock import MagicMock, Mock, patch

import pytest

from config.settings import LLMConfig
from ragcore.deadline import Deadline
from ragcore.errors import (
    ContentPolicyError,
    DeadlineExceeded,
    GenerationError,
    GenerationTimeoutError,
    TerminalError,
)
from ragcore.llm_service import (
    BaseLLMProvider,
    GenerationOptions,
    Generator,
    LLMResponse,
    OllamaProvider,
    OpenAIProvider,
    create_llm_provider,
    strip_thinking_tags,
)


class ScriptedProvider(BaseLLMProvider):
    """Returns or raises the next scripted outcome on each call."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def generate(self, prompt, system_prompt=None, temperature=0.7, max_tokens=None, model=None):
        self.calls.append({
            "prompt": prompt,
            "system_prompt": system_prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "model": model,
        })
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return LLMResponse(content=outcome, model=model or "scripted")

    @property
    def model_name(self):
        return "scripted"


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


@pytest.fixture
def config():
    return LLMConfig(initial_delay=1.0, backoff_multiplier=2.0, max_delay=10.0)


def make_generator(outcomes, config, sleep=None):
    return Generator(ScriptedProvider(outcomes), config, sleep=sleep or Mock())


class TestStripThinkingTags:

    def test_removes_blocks(self):
        assert strip_thinking_tags("<think>hmm\nok</think>\nAnswer [1]") == "Answer [1]"

    def test_plain_text_unchanged(self):
        assert strip_thinking_tags("Plain answer") == "Plain answer"


class TestLLMResponse:

    def test_text_alias(self):
        response = LLMResponse(content="Hi", model="m", usage={"total_tokens": 3})
        assert response.text == "Hi"
        assert str(response) == "Hi"


class TestGenerator:
    """Tests for retry, timeout and error policy."""

    def test_success(self, config):
        generator = make_generator(["<think>x</think>The answer"], config)

        response = generator.generate("system", "user")

        assert response.content == "The answer"
        call = generator.provider.calls[0]
        assert call["system_prompt"] == "system"
        assert call["prompt"] == "user"
        assert call["temperature"] == config.temperature

    def test_retries_transient(self, config):
        sleep = Mock()
        generator = make_generator([StatusError(503), "ok"], config, sleep)

        response = generator.generate("s", "u", GenerationOptions(max_retries=2))

        assert response.content == "ok"
        sleep.assert_called_once_with(1.0)

    def test_exhausted_retries(self, config):
        generator = make_generator([StatusError(502)] * 3, config)

        with pytest.raises(GenerationError):
            generator.generate("s", "u", GenerationOptions(max_retries=2))
        assert len(generator.provider.calls) == 3

    def test_content_policy_not_retried(self, config):
        generator = make_generator(
            [Exception("blocked by content_policy"), "never"], config
        )

        with pytest.raises(ContentPolicyError):
            generator.generate("s", "u", GenerationOptions(max_retries=3))
        assert len(generator.provider.calls) == 1

    def test_malformed_request_not_retried(self, config):
        generator = make_generator([StatusError(400), "never"], config)

        with pytest.raises(TerminalError):
            generator.generate("s", "u", GenerationOptions(max_retries=3))
        assert len(generator.provider.calls) == 1

    def test_hard_timeout(self, config):
        """A hanging provider surfaces as GenerationTimeoutError."""
        release = threading.Event()

        class HangingProvider(ScriptedProvider):
            def generate(self, *args, **kwargs):
                release.wait(5)
                return LLMResponse(content="late", model="scripted")

        generator = Generator(HangingProvider([]), config, sleep=Mock())
        try:
            with pytest.raises(GenerationTimeoutError):
                generator.generate("s", "u", GenerationOptions(timeout=0.05, max_retries=0))
        finally:
            release.set()

    def test_expired_deadline(self, config):
        generator = make_generator(["never"], config)
        deadline = Deadline(expires_at=0.0, clock=lambda: 1.0)

        with pytest.raises(DeadlineExceeded):
            generator.generate("s", "u", deadline=deadline)
        assert generator.provider.calls == []

    def test_backoff_never_outlives_deadline(self):
        """A retry whose backoff would pass the deadline fails fast."""
        sleep = Mock()
        config = LLMConfig(initial_delay=3.0, max_retries=1)
        generator = make_generator([ConnectionError("reset"), "never"], config, sleep)
        deadline = Deadline(expires_at=10.5, clock=lambda: 10.0)

        with pytest.raises(DeadlineExceeded) as exc:
            generator.generate("s", "u", deadline=deadline)

        assert exc.value.kind == "timeout"
        sleep.assert_not_called()
        assert len(generator.provider.calls) == 1

    def test_internal_options(self, config):
        config.grader_model = "small-model"
        generator = make_generator(['{"score": 1}'], config)

        options = generator.internal_options(max_tokens=256)
        generator.generate("s", "u", options)

        assert options.temperature == 0.0
        assert options.max_retries == config.internal_max_retries
        assert generator.provider.calls[0]["model"] == "small-model"
        assert generator.provider.calls[0]["max_tokens"] == 256


class TestProviders:
    """Tests for provider SDK adapters."""

    def test_ollama_generate(self):
        provider = OllamaProvider(model="llama3.1")
        client = MagicMock()
        client.chat.return_value = {
            "message": {"content": "Hello"},
            "prompt_eval_count": 5,
            "eval_count": 2,
        }
        provider._client = client

        response = provider.generate("Hi", system_prompt="Be brief", max_tokens=10)

        assert response.content == "Hello"
        assert response.usage == {"prompt_tokens": 5, "completion_tokens": 2}
        kwargs = client.chat.call_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "Be brief"}
        assert kwargs["options"]["num_predict"] == 10

    def test_openai_content_filter(self):
        provider = OpenAIProvider(api_key="test")
        client = MagicMock()
        choice = MagicMock()
        choice.finish_reason = "content_filter"
        client.chat.completions.create.return_value = MagicMock(choices=[choice])
        provider._client = client

        with pytest.raises(ContentPolicyError):
            provider.generate("Hi")

    @patch.dict("os.environ", {"OPENAI_API_KEY": ""})
    def test_openai_missing_key(self):
        with pytest.raises(TerminalError):
            OpenAIProvider(api_key=None).generate("Hi")

    def test_factory(self):
        config = LLMConfig(provider="ollama", ollama_model="qwen3")
        provider = create_llm_provider(config=config)

        assert isinstance(provider, OllamaProvider)
        assert provider.model_name == "qwen3"

    def test_factory_unknown(self):
        with pytest.raises(ValueError):
            create_llm_provider("unknown", LLMConfig())


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

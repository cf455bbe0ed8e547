"""
LLM Service Module

Provides an abstraction layer for Large Language Model providers:
- Local: Ollama (Llama, Mistral, etc.) - Free, runs locally
- Cloud: OpenAI - Requires API key
- Cloud: Google Gemini - Requires API key
- Cloud: Mistral AI - Requires API key

Providers only know how to make one call. The Generator owns the call
policy on top of them:
- a hard timeout per attempt, clamped to the query deadline
- bounded retries with exponential backoff for transient failures
- no retries for content-policy rejections or malformed requests
- <think>...</think> reasoning blocks stripped from the output

Usage:
    generator = Generator(create_llm_provider("ollama"))
    response = generator.generate(system_prompt, user_prompt)
    print(response.text)
"""

import logging
import os
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from google import genai
from google.genai import types

from config.settings import get_settings, LLMConfig
from ragcore.deadline import Deadline
from ragcore.errors import (
    ContentPolicyError,
    GenerationError,
    GenerationTimeoutError,
    RAGError,
    TerminalError,
)
from ragcore.retry import (
    call_with_timeout,
    is_content_policy_error,
    is_transient_error,
    with_retry,
)

# Configure logging
logger = logging.getLogger(__name__)

_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>")


def strip_thinking_tags(text: str) -> str:
    """Remove <think>...</think> blocks some models emit before answering."""
    return _THINK_BLOCK.sub("", text).strip()


@dataclass
class LLMResponse:
    """
    Standardized response from LLM providers.

    Attributes:
        content: The generated text response
        model: Model name used for generation
        usage: Token usage statistics (if available)
        finish_reason: Why generation stopped
    """

    content: str
    model: str
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content

    def __str__(self) -> str:
        return self.content


@dataclass
class GenerationOptions:
    """Per-call generation settings."""

    temperature: float = 0.7
    max_tokens: int = 2048
    timeout: Optional[float] = 45.0  # seconds, per attempt
    max_retries: int = 1
    model: Optional[str] = None  # overrides the provider's default model


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    A provider makes exactly one call and raises whatever its SDK raises.
    """

    @abstractmethod
    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> LLMResponse:
        """
        Generate a response from the LLM.

        Args:
            prompt: User prompt
            system_prompt: Optional system instructions
            temperature: Creativity (0-1, lower = more deterministic)
            max_tokens: Maximum tokens in response
            model: Optional model override

        Returns:
            LLMResponse object
        """
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the default model name."""
        pass


def _chat_messages(prompt: str, system_prompt: Optional[str]):
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


class OllamaProvider(BaseLLMProvider):
    """
    Ollama provider for local LLM inference.

    Requirements:
    - Ollama installed: https://ollama.ai
    - Model pulled: ollama pull llama3.1
    """

    def __init__(
        self,
        model: str = "llama3.1",
        base_url: str = "http://localhost:11434",
    ):
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._client = None

        logger.info(f"Initializing OllamaProvider: model={model}, url={base_url}")

    def _get_client(self):
        """Get or create Ollama client."""
        if self._client is None:
            import ollama

            self._client = ollama.Client(host=self._base_url)
            logger.info("Ollama client initialized")
        return self._client

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> LLMResponse:
        client = self._get_client()
        model = model or self._model

        options = {"temperature": temperature}
        if max_tokens:
            options["num_predict"] = max_tokens

        response = client.chat(
            model=model,
            messages=_chat_messages(prompt, system_prompt),
            options=options,
        )

        return LLMResponse(
            content=response["message"]["content"] or "",
            model=model,
            usage={
                "prompt_tokens": response.get("prompt_eval_count", 0) or 0,
                "completion_tokens": response.get("eval_count", 0) or 0,
            },
            finish_reason=response.get("done_reason") or "stop",
        )

    @property
    def model_name(self) -> str:
        return self._model


class OpenAIProvider(BaseLLMProvider):
    """OpenAI provider for GPT models."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
    ):
        self._model = model
        self._api_key = api_key
        self._client = None

        logger.info(f"Initializing OpenAIProvider: model={model}")

    def _get_client(self):
        """Get or create OpenAI client."""
        if self._client is None:
            from openai import OpenAI

            api_key = self._api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise TerminalError(
                    "OpenAI API key not found. Set OPENAI_API_KEY environment variable."
                )

            self._client = OpenAI(api_key=api_key)
            logger.info("OpenAI client initialized")
        return self._client

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> LLMResponse:
        client = self._get_client()

        kwargs = {
            "model": model or self._model,
            "messages": _chat_messages(prompt, system_prompt),
            "temperature": temperature,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        response = client.chat.completions.create(**kwargs)

        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise ContentPolicyError("OpenAI response blocked by content_filter")

        return LLMResponse(
            content=choice.message.content or "",
            model=response.model,
            usage={
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            } if response.usage else None,
            finish_reason=choice.finish_reason,
        )

    @property
    def model_name(self) -> str:
        return self._model


class GeminiProvider(BaseLLMProvider):
    """
    Google Gemini provider using the google-genai package.

    Models:
    - gemini-2.0-flash: Fast, recommended
    - gemini-1.5-pro: More capable, longer context
    """

    def __init__(
        self,
        model: str = "gemini-2.0-flash",
        api_key: Optional[str] = None,
    ):
        self._model = model
        self._api_key = api_key
        self._client = None

        logger.info(f"Initializing GeminiProvider: model={model}")

    def _get_client(self):
        """Get or create Gemini client."""
        if self._client is None:
            api_key = self._api_key or os.getenv("GEMINI_API_KEY")
            if not api_key:
                raise TerminalError(
                    "Gemini API key not found. Set GEMINI_API_KEY environment variable."
                )

            self._client = genai.Client(api_key=api_key)
            logger.info(f"Gemini client initialized with model: {self._model}")
        return self._client

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> LLMResponse:
        client = self._get_client()
        model = model or self._model

        config = types.GenerateContentConfig(
            temperature=temperature,
            system_instruction=system_prompt if system_prompt else None,
        )
        if max_tokens:
            config.max_output_tokens = max_tokens

        response = client.models.generate_content(
            model=model,
            contents=prompt,
            config=config,
        )

        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise ContentPolicyError(f"Gemini blocked the prompt: {feedback.block_reason}")

        usage = getattr(response, "usage_metadata", None)
        return LLMResponse(
            content=response.text or "",
            model=model,
            usage={
                "prompt_tokens": usage.prompt_token_count or 0,
                "completion_tokens": usage.candidates_token_count or 0,
                "total_tokens": usage.total_token_count or 0,
            } if usage else None,
            finish_reason="stop",
        )

    @property
    def model_name(self) -> str:
        return self._model


class MistralProvider(BaseLLMProvider):
    """
    Mistral AI cloud provider.

    Models:
    - mistral-small-latest: Fast, efficient
    - mistral-large-latest: Most capable
    """

    def __init__(
        self,
        model: str = "mistral-small-latest",
        api_key: Optional[str] = None,
    ):
        self._model = model
        self._api_key = api_key
        self._client = None

        logger.info(f"Initializing MistralProvider: model={model}")

    def _get_client(self):
        """Get or create Mistral client."""
        if self._client is None:
            from mistralai import Mistral

            api_key = self._api_key or os.getenv("MISTRAL_API_KEY")
            if not api_key:
                raise TerminalError(
                    "Mistral API key not found. Set MISTRAL_API_KEY environment variable."
                )

            self._client = Mistral(api_key=api_key)
            logger.info(f"Mistral client initialized with model: {self._model}")
        return self._client

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> LLMResponse:
        client = self._get_client()
        model = model or self._model

        response = client.chat.complete(
            model=model,
            messages=_chat_messages(prompt, system_prompt),
            temperature=temperature,
            max_tokens=max_tokens,
        )

        choice = response.choices[0]
        return LLMResponse(
            content=choice.message.content or "",
            model=model,
            usage={
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            } if response.usage else None,
            finish_reason=choice.finish_reason,
        )

    @property
    def model_name(self) -> str:
        return self._model


def create_llm_provider(
    provider: Optional[str] = None,
    config: Optional[LLMConfig] = None,
) -> BaseLLMProvider:
    """
    Build an LLM provider from configuration.

    Args:
        provider: "ollama", "openai", "gemini", or "mistral" (default from config)
        config: Optional LLMConfig instance
    """
    config = config or get_settings().llm
    provider = provider or config.provider

    if provider == "ollama":
        return OllamaProvider(model=config.ollama_model, base_url=config.ollama_base_url)
    if provider == "openai":
        return OpenAIProvider(model=config.openai_model, api_key=config.openai_api_key)
    if provider == "gemini":
        return GeminiProvider(model=config.gemini_model, api_key=config.gemini_api_key)
    if provider == "mistral":
        return MistralProvider(model=config.mistral_model, api_key=config.mistral_api_key)
    raise ValueError(f"Unknown LLM provider: {provider}")


class Generator:
    """
    Invokes the language model under a retry and timeout policy.

    Example:
        generator = Generator(create_llm_provider())
        response = generator.generate(
            system_prompt="You are a helpful assistant.",
            user_prompt="<user_input>\\nHello\\n</user_input>",
        )
    """

    def __init__(
        self,
        provider: BaseLLMProvider,
        config: Optional[LLMConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the Generator.

        Args:
            provider: The LLM provider to call
            config: Optional LLMConfig instance (retry policy and defaults)
            sleep: Backoff sleep function (injectable for tests)
        """
        self.provider = provider
        self.config = config or get_settings().llm
        self._sleep = sleep

        logger.info(f"Generator initialized with model {provider.model_name}")

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    def default_options(self) -> GenerationOptions:
        """Options for user-facing answer generation."""
        return GenerationOptions(
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            timeout=self.config.timeout,
            max_retries=self.config.max_retries,
        )

    def internal_options(
        self,
        max_tokens: int = 256,
        timeout: Optional[float] = 30.0,
        max_retries: Optional[int] = None,
    ) -> GenerationOptions:
        """Deterministic options for classifier and grading calls."""
        return GenerationOptions(
            temperature=0.0,
            max_tokens=max_tokens,
            timeout=timeout,
            max_retries=(
                self.config.internal_max_retries if max_retries is None else max_retries
            ),
            model=self.config.grader_model,
        )

    def _attempt(self, system_prompt: str, user_prompt: str, options: GenerationOptions) -> LLMResponse:
        try:
            return self.provider.generate(
                prompt=user_prompt,
                system_prompt=system_prompt,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                model=options.model,
            )
        except RAGError:
            raise
        except Exception as e:
            if is_content_policy_error(e):
                raise ContentPolicyError(str(e)) from e
            if is_transient_error(e):
                raise
            raise TerminalError(f"LLM request rejected: {e}") from e

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[GenerationOptions] = None,
        deadline: Optional[Deadline] = None,
    ) -> LLMResponse:
        """
        Generate a response.

        Raises:
            ContentPolicyError / TerminalError: immediately, never retried
            GenerationTimeoutError: an attempt exceeded its hard timeout
                and no retries were left
            GenerationError: transient failures exhausted the retries
            DeadlineExceeded: the query deadline ran out between attempts
        """
        options = options or self.default_options()
        deadline = deadline or Deadline.none()
        model = options.model or self.provider.model_name

        def attempt() -> LLMResponse:
            deadline.check("generation")
            timeout = deadline.clamp(options.timeout)
            return call_with_timeout(
                lambda: self._attempt(system_prompt, user_prompt, options),
                timeout,
                label=f"generate[{model}]",
            )

        started = time.monotonic()
        try:
            response = with_retry(
                attempt,
                max_retries=options.max_retries,
                initial_delay=self.config.initial_delay,
                backoff_multiplier=self.config.backoff_multiplier,
                max_delay=self.config.max_delay,
                label=f"generate[{model}]",
                sleep=self._sleep,
                deadline=deadline,
            )
        except RAGError:
            raise
        except TimeoutError as e:
            logger.error(f"Generation timed out: {e}")
            raise GenerationTimeoutError(str(e)) from e
        except Exception as e:
            logger.error(f"Generation failed after {options.max_retries + 1} attempts: {e}")
            raise GenerationError(f"Generation failed: {e}") from e

        logger.debug(
            f"Generated {len(response.content)} chars with {response.model} "
            f"in {time.monotonic() - started:.2f}s"
        )
        return replace(response, content=strip_thinking_tags(response.content))

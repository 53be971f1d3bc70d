"""LLM client wrapper with provider abstraction.

Used for message classification: the caller sends a system prompt plus the
user's message and gets back either text or a parsed JSON object.
"""

import json
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv
from openai import APIError, APITimeoutError, OpenAI, RateLimitError

from core.logger import get_logger

load_dotenv()
logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class BaseLLMClient(ABC):
    """Abstract base for LLM clients to enable provider swapping."""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 512,
        json_mode: bool = False,
    ) -> str:
        """Generate a response from the LLM."""
        pass


class OpenAIClient(BaseLLMClient):
    """OpenAI-compatible API client implementation."""

    DEFAULT_RETRY_ATTEMPTS = 3
    DEFAULT_RETRY_DELAY = 1.0

    def __init__(
        self,
        api_key: Optional[str] = None,
        default_model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout: int = 30,
        max_retries: int = DEFAULT_RETRY_ATTEMPTS,
    ) -> None:
        """
        Args:
            api_key: API key. Falls back to LLM_API_KEY or OPENAI_API_KEY env var.
            default_model: Model used when a call does not name one.
            base_url: Optional gateway URL (Azure, local proxies).
            timeout: Request timeout in seconds.
            max_retries: Attempts on rate limit / timeout errors.
        """
        self.api_key = api_key or os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
        self.default_model = default_model
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self._client: Optional[OpenAI] = None
        self._usage_log: List[Dict[str, Any]] = []

    @property
    def client(self) -> OpenAI:
        """Lazy initialization of OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise ValueError("LLM_API_KEY or OPENAI_API_KEY not set in environment")
            client_kwargs: Dict[str, Any] = {"api_key": self.api_key, "timeout": self.timeout}
            if self.base_url:
                client_kwargs["base_url"] = self.base_url
            self._client = OpenAI(**client_kwargs)
        return self._client

    def _retry_with_backoff(self, func: Callable[[], Any]) -> Any:
        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                return func()
            except (RateLimitError, APITimeoutError) as e:
                last_exception = e
                delay = self.DEFAULT_RETRY_DELAY * (2 ** attempt)
                logger.warning(
                    f"{type(e).__name__}. Retrying in {delay}s (attempt {attempt + 1}/{self.max_retries})"
                )
                time.sleep(delay)
        raise RuntimeError(f"LLM generation failed after {self.max_retries} attempts: {last_exception}")

    def generate(
        self,
        prompt: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 512,
        json_mode: bool = False,
    ) -> str:
        model = model or self.default_model
        logger.debug(f"Generating with model={model}, prompt_length={len(prompt)}, json_mode={json_mode}")

        def _call() -> str:
            request: Dict[str, Any] = {
                "model": model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
            if json_mode:
                request["response_format"] = {"type": "json_object"}
            response = self.client.chat.completions.create(**request)

            self._usage_log.append({
                "model": model,
                "prompt_tokens": getattr(response.usage, "prompt_tokens", 0),
                "completion_tokens": getattr(response.usage, "completion_tokens", 0),
            })
            return (response.choices[0].message.content or "").strip()

        try:
            return self._retry_with_backoff(_call)
        except APIError as e:
            raise RuntimeError(f"LLM generation failed: {e}") from e

    def get_usage_log(self) -> List[Dict[str, Any]]:
        return self._usage_log.copy()


class LLMClient:
    """
    Provider-agnostic LLM client facade.

    Swap provider by passing a different BaseLLMClient implementation.
    """

    def __init__(self, provider: Optional[BaseLLMClient] = None) -> None:
        self._provider = provider or OpenAIClient()

    @classmethod
    def from_env(cls) -> "LLMClient":
        """
        Factory constructor using environment variables.

        Required:
            - LLM_API_KEY (or OPENAI_API_KEY as fallback)

        Optional:
            - LLM_MODEL (default: gpt-4o-mini)
            - LLM_BASE_URL
            - LLM_TIMEOUT (default: 30)
            - LLM_MAX_RETRIES (default: 3)
        """
        api_key = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("LLM_API_KEY or OPENAI_API_KEY not set in environment")

        return cls(provider=OpenAIClient(
            api_key=api_key,
            default_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            base_url=os.getenv("LLM_BASE_URL"),
            timeout=int(os.getenv("LLM_TIMEOUT", "30")),
            max_retries=int(os.getenv("LLM_MAX_RETRIES", "3")),
        ))

    def generate(self, prompt: str, system_prompt: str = DEFAULT_SYSTEM_PROMPT, **kwargs: Any) -> str:
        return self._provider.generate(prompt=prompt, system_prompt=system_prompt, **kwargs)

    def generate_json(self, prompt: str, system_prompt: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Generate and parse a JSON object response.

        Raises:
            RuntimeError: If the provider fails or the reply is not a JSON object.
        """
        raw = self.generate(prompt, system_prompt=system_prompt, json_mode=True, **kwargs)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise RuntimeError(f"LLM returned invalid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise RuntimeError(f"LLM returned {type(parsed).__name__}, expected JSON object")
        return parsed

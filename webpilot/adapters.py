"""
Provider adapters for WebPilot.

One adapter per provider wire format, all sharing the same retry loop:
- OpenAI (and OpenAI-compatible endpoints such as LM Studio)
- Anthropic (Claude)
- Google GenAI (Gemini)
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from .providers import Provider, ProviderConfig

logger = logging.getLogger(__name__)


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters."""

    max_tokens = 1500
    temperature = 0.1

    def __init__(self, config: ProviderConfig, timeout: float = 60.0,
                 client: Optional[httpx.Client] = None):
        self.config = config
        self.model = config.effective_model
        self.client = client or httpx.Client(timeout=timeout)

    @abstractmethod
    def build_request(self, system: str, user: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, payload) for one completion."""

    @abstractmethod
    def parse_response(self, data: dict[str, Any]) -> str:
        """Pull the assistant text out of a decoded response body."""

    def chat_completion(self, system: str, user: str, max_retries: int = 3) -> str:
        """Send a completion request, retrying on rate limits and network errors.

        Args:
            system: System prompt
            user: User prompt
            max_retries: Maximum retries after the first attempt

        Returns:
            The assistant's response content

        Raises:
            httpx.HTTPError: If every attempt failed
        """
        url, headers, payload = self.build_request(system, user)

        last_error: Optional[Exception] = None
        for attempt in range(max_retries + 1):
            if attempt > 0:
                wait_time = 2 ** (attempt + 1)
                logger.debug("Retrying %s completion in %ss (attempt %d)",
                             self.config.provider.value, wait_time, attempt + 1)
                time.sleep(wait_time)
            try:
                response = self.client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return self.parse_response(response.json())
            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code == 429 and attempt < max_retries:
                    continue
                raise
            except httpx.TransportError as e:
                last_error = e
                if attempt < max_retries:
                    continue
                raise

        raise last_error

    def close(self) -> None:
        self.client.close()


class OpenAIAdapter(LLMAdapter):
    """Adapter for the OpenAI Chat Completions API."""

    def build_request(self, system, user):
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        return f"{self.config.endpoint}/chat/completions", headers, payload

    def parse_response(self, data):
        return data["choices"][0]["message"]["content"] or ""


class AnthropicAdapter(LLMAdapter):
    """Adapter for the Anthropic Messages API.

    The system prompt travels as a top-level parameter, not a message.
    """

    def build_request(self, system, user):
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key or "",
            "anthropic-version": "2023-06-01",
        }
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": user}],
        }
        if system:
            payload["system"] = system
        return self.config.endpoint, headers, payload

    def parse_response(self, data):
        # Content comes back as a list of typed blocks
        for block in data.get("content", []):
            if block.get("type") == "text":
                return block["text"]
        return ""


class GoogleAdapter(LLMAdapter):
    """Adapter for the Google Generative Language API (Gemini)."""

    def build_request(self, system, user):
        url = f"{self.config.endpoint}/{self.model}:generateContent?key={self.config.api_key}"
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": user}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return url, {"Content-Type": "application/json"}, payload

    def parse_response(self, data):
        candidates = data.get("candidates", [])
        if candidates:
            parts = candidates[0].get("content", {}).get("parts", [])
            if parts:
                return parts[0].get("text", "")
        return ""


ADAPTERS = {
    Provider.LM_STUDIO: OpenAIAdapter,
    Provider.OPENAI: OpenAIAdapter,
    Provider.ANTHROPIC: AnthropicAdapter,
    Provider.GOOGLE: GoogleAdapter,
}


def create_adapter(config: ProviderConfig, **kwargs) -> LLMAdapter:
    """Create the adapter matching a provider configuration.

    Args:
        config: Provider configuration
        **kwargs: Passed to the adapter (timeout, client)

    Returns:
        Configured LLM adapter
    """
    adapter_class = ADAPTERS.get(config.provider, OpenAIAdapter)
    return adapter_class(config, **kwargs)

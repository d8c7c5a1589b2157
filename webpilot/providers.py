"""
LLM provider configuration for WebPilot.

Provides provider-specific endpoints, default models and the environment
variables their API keys are read from.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Provider(str, Enum):
    """Supported LLM providers."""
    LM_STUDIO = "lm_studio"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


PROVIDER_ENDPOINTS = {
    Provider.LM_STUDIO: "http://127.0.0.1:1234/v1",
    Provider.OPENAI: "https://api.openai.com/v1",
    Provider.ANTHROPIC: "https://api.anthropic.com/v1/messages",
    Provider.GOOGLE: "https://generativelanguage.googleapis.com/v1beta/models",
}

PROVIDER_DEFAULT_MODELS = {
    Provider.LM_STUDIO: "qwen2.5:7b",
    Provider.OPENAI: "gpt-4o-mini",
    Provider.ANTHROPIC: "claude-3-haiku-20240307",
    Provider.GOOGLE: "gemini-1.5-flash",
}

PROVIDER_API_KEY_ENV = {
    Provider.LM_STUDIO: None,
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.ANTHROPIC: "ANTHROPIC_API_KEY",
    Provider.GOOGLE: "GOOGLE_API_KEY",
}

PROVIDER_DISPLAY_NAMES = {
    Provider.LM_STUDIO: "LM Studio (Local)",
    Provider.OPENAI: "OpenAI",
    Provider.ANTHROPIC: "Anthropic",
    Provider.GOOGLE: "Google AI",
}

# Providers served through the OpenAI chat-completions wire format
OPENAI_COMPATIBLE = {Provider.LM_STUDIO, Provider.OPENAI}


def parse_provider(value: Optional[str]) -> Provider:
    """Parse a provider name, falling back to OpenAI for unknown names."""
    if not value:
        return Provider.OPENAI
    normalized = value.strip().lower().replace("-", "_")
    if normalized in ("lmstudio", "local"):
        return Provider.LM_STUDIO
    try:
        return Provider(normalized)
    except ValueError:
        return Provider.OPENAI


@dataclass
class ProviderConfig:
    """Configuration for an LLM provider."""

    provider: Provider = Provider.OPENAI
    api_key: Optional[str] = None
    model: Optional[str] = None
    custom_endpoint: Optional[str] = None

    @property
    def endpoint(self) -> str:
        """Get the endpoint URL for this provider."""
        if self.custom_endpoint:
            return self.custom_endpoint.rstrip("/")
        return PROVIDER_ENDPOINTS[self.provider]

    @property
    def effective_model(self) -> str:
        return self.model or PROVIDER_DEFAULT_MODELS[self.provider]

    @property
    def requires_api_key(self) -> bool:
        return PROVIDER_API_KEY_ENV[self.provider] is not None

    @property
    def is_openai_compatible(self) -> bool:
        return self.provider in OPENAI_COMPATIBLE

    @property
    def display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES.get(self.provider, self.provider.value)

    def validate(self) -> tuple[bool, str]:
        """Validate the configuration.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if self.requires_api_key and not self.api_key:
            env_name = PROVIDER_API_KEY_ENV[self.provider]
            return False, f"{self.display_name} requires an API key (set {env_name})"
        return True, ""

    @classmethod
    def from_env(
        cls,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> "ProviderConfig":
        """Build a provider config, reading the API key from the environment.

        The provider-specific variable wins over the generic WEBPILOT_API_KEY.
        """
        resolved = parse_provider(provider or os.getenv("WEBPILOT_PROVIDER"))
        env_name = PROVIDER_API_KEY_ENV[resolved]
        api_key = (os.getenv(env_name) if env_name else None) or os.getenv("WEBPILOT_API_KEY")
        return cls(
            provider=resolved,
            api_key=api_key,
            model=model or os.getenv("WEBPILOT_MODEL") or None,
            custom_endpoint=endpoint or os.getenv("WEBPILOT_ENDPOINT") or None,
        )

    def to_dict(self) -> dict:
        """Convert to a dictionary with the key masked."""
        return {
            "provider": self.provider.value,
            "api_key": "***" if self.api_key else None,
            "model": self.effective_model,
            "endpoint": self.endpoint,
        }

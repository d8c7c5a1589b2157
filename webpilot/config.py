"""
Configuration management for WebPilot.

Provides the configuration dataclass and environment variable loading.
"""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .providers import ProviderConfig

# Load environment variables from .env file if present
load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_base_dir() -> Path:
    """Get the base directory for WebPilot data."""
    return Path.home() / ".webpilot"


def get_runs_dir() -> Path:
    """Get the directory for run logs."""
    return get_base_dir() / "runs"


@dataclass
class AgentConfig:
    """Configuration for the tool server, the agent loop and the LLM."""

    # Tool server launch
    mcp_command: str = field(
        default_factory=lambda: os.getenv("WEBPILOT_MCP_COMMAND", "npx")
    )
    mcp_args: list[str] = field(
        default_factory=lambda: shlex.split(
            os.getenv("WEBPILOT_MCP_ARGS", "@playwright/mcp@latest")
        )
    )
    headless: bool = field(
        default_factory=lambda: _env_flag("WEBPILOT_HEADLESS", True)
    )
    viewport: Optional[str] = "1280,800"

    # Transport (seconds)
    request_timeout_s: float = 30.0
    stop_grace_s: float = 5.0
    startup_delay_s: float = 0.0

    # Agent loop
    max_steps: int = 30
    initial_confidence: float = 70.0
    exploration_budget: int = 10
    base_action_timeout_ms: int = 5000
    base_wait_ms: int = 1000
    min_wait_ms: int = 500
    max_wait_ms: int = 5000
    max_context_tokens: int = 4000

    # LLM settings
    provider: Optional[str] = field(
        default_factory=lambda: os.getenv("WEBPILOT_PROVIDER", "openai")
    )
    model: Optional[str] = field(
        default_factory=lambda: os.getenv("WEBPILOT_MODEL") or None
    )
    model_endpoint: Optional[str] = field(
        default_factory=lambda: os.getenv("WEBPILOT_ENDPOINT") or None
    )

    # OpenAI-compatible providers go through LangChain when enabled
    use_langchain: bool = True

    # Write steps.jsonl / summary.json under ~/.webpilot/runs
    log_runs: bool = True

    # Debug mode - enables verbose logging (off by default)
    debug: bool = field(
        default_factory=lambda: _env_flag("WEBPILOT_DEBUG", False)
    )

    def provider_config(self, provider: Optional[str] = None,
                        model: Optional[str] = None) -> ProviderConfig:
        """Resolve the LLM provider settings, with per-goal overrides."""
        return ProviderConfig.from_env(
            provider=provider or self.provider,
            model=model or self.model,
            endpoint=self.model_endpoint,
        )

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        get_base_dir().mkdir(parents=True, exist_ok=True)
        if self.log_runs:
            get_runs_dir().mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_cli_args(
        cls,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        max_steps: int = 30,
        headless: Optional[bool] = None,
        debug: bool = False,
        log_runs: bool = True,
    ) -> "AgentConfig":
        """Create configuration from CLI arguments."""
        config = cls(max_steps=max_steps, log_runs=log_runs)
        if provider:
            config.provider = provider
        if model:
            config.model = model
        if headless is not None:
            config.headless = headless
        if debug:
            config.debug = True
        return config


# Default configuration values for documentation
DEFAULTS = {
    "mcp_command": "npx",
    "mcp_args": "@playwright/mcp@latest",
    "headless": True,
    "viewport": "1280,800",
    "provider": "openai",
    "max_steps": 30,
    "request_timeout_s": 30.0,
    "stop_grace_s": 5.0,
    "base_action_timeout_ms": 5000,
    "base_wait_ms": 1000,
    "max_context_tokens": 4000,
    "initial_confidence": 70,
    "exploration_budget": 10,
}

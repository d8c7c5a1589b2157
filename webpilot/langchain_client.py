"""
LangChain-based chat completer for WebPilot.

Used for OpenAI-compatible providers (OpenAI, LM Studio) when LangChain
is enabled in the configuration.
"""

import logging
from typing import Any, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import LLMCollaboratorError
from .providers import ProviderConfig

logger = logging.getLogger(__name__)


class LangChainCompleter:
    """ChatCompleter backed by langchain_openai.ChatOpenAI."""

    def __init__(self, provider_config: ProviderConfig, llm: Optional[Any] = None,
                 timeout: float = 60.0):
        """Initialize the completer.

        Args:
            provider_config: Endpoint, model and key to use
            llm: Pre-built chat model (tests inject a fake here)
            timeout: Request timeout in seconds
        """
        self.provider_config = provider_config
        self.llm = llm or ChatOpenAI(
            base_url=provider_config.endpoint,
            api_key=provider_config.api_key or "not-required",
            model=provider_config.effective_model,
            temperature=0.1,
            max_tokens=1500,
            timeout=timeout,
        )

    def complete(self, system: str, user: str) -> str:
        messages = [SystemMessage(content=system), HumanMessage(content=user)]
        try:
            response = self.llm.invoke(messages)
        except Exception as e:
            raise LLMCollaboratorError(f"LangChain completion failed: {e}") from e

        content = response.content
        # Some models return a list of content blocks
        if isinstance(content, list):
            content = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block)
                for block in content
            )
        return content or ""

    def close(self) -> None:
        pass

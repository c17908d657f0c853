"""
Completion and embedding providers.

The engine only needs ``generate(prompt) -> text``. ``ChatModelProvider``
adapts any LangChain chat model to that contract and adds a secondary
generation mode (a bare prompt string, optionally on a separate model) that
the retry state machine tries once the primary mode is exhausted.
"""

import logging
import os
from typing import Optional, Protocol

from langchain_core.messages import HumanMessage, SystemMessage

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

SUMMARIZER_SYSTEM_PROMPT = (
    "You are an expert narrative summarizer. You write short, factual, "
    "past-tense summaries of roleplay and conversation turns."
)


class CompletionProvider(Protocol):
    async def generate(self, prompt: str) -> str: ...


def get_credentials() -> tuple[str | None, str | None]:
    """
    Resolve API credentials.

    Generic variables win over Anthropic-specific ones:
    - API key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
    - Base URL: API_BASE_URL > ANTHROPIC_BASE_URL
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def response_text(response) -> str:
    """Extract text from a chat model response (string or content blocks)."""
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content) if content else ""


class ChatModelProvider:
    """
    Completion provider backed by LangChain chat models.

    Usage:
        provider = ChatModelProvider(create_chat_model())
        text = await provider.generate(prompt)
    """

    def __init__(self, llm, fallback_llm=None, system_prompt: str = SUMMARIZER_SYSTEM_PROMPT):
        self._llm = llm
        self._fallback_llm = fallback_llm
        self.system_prompt = system_prompt

    async def generate(self, prompt: str) -> str:
        messages = []
        if self.system_prompt:
            messages.append(SystemMessage(content=self.system_prompt))
        messages.append(HumanMessage(content=prompt))
        response = await self._llm.ainvoke(messages)
        return response_text(response)

    async def generate_fallback(self, prompt: str) -> str:
        """Secondary mode: the raw prompt string, on the fallback model if one is set."""
        llm = self._fallback_llm or self._llm
        response = await llm.ainvoke(prompt)
        return response_text(response)


def create_chat_model(model_name: Optional[str] = None, temperature: float = 0.3, max_tokens: int = 1000):
    """
    Build a chat model from environment configuration.

    MODEL_PROVIDER selects the LangChain integration; CLAUDE_MODEL names the
    model when ``model_name`` is not given.
    """
    from langchain.chat_models import init_chat_model

    model_name = model_name or os.getenv("CLAUDE_MODEL", DEFAULT_MODEL)
    api_key, base_url = get_credentials()
    init_kwargs = {"temperature": temperature, "max_tokens": max_tokens}
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url:
        init_kwargs["base_url"] = base_url

    provider_kwargs = {}
    model_provider = os.getenv("MODEL_PROVIDER")
    if model_provider:
        provider_kwargs["model_provider"] = model_provider

    logger.info("Creating summarization model %s", model_name)
    return init_chat_model(model_name, **provider_kwargs, **init_kwargs)


def create_embeddings(model_name: str):
    """
    Build an OpenAI-compatible embeddings model, or None when unavailable.

    Dedicated MEMORY_EMBEDDING_* variables win over the general credentials.
    """
    if not model_name:
        return None
    api_key, base_url = get_credentials()
    embed_api_key = os.getenv("MEMORY_EMBEDDING_API_KEY") or api_key
    embed_base_url = os.getenv("MEMORY_EMBEDDING_BASE_URL") or base_url
    try:
        from langchain_openai import OpenAIEmbeddings

        embed_kwargs = {}
        if embed_api_key:
            embed_kwargs["api_key"] = embed_api_key
        if embed_base_url:
            embed_kwargs["base_url"] = embed_base_url
        return OpenAIEmbeddings(model=model_name, **embed_kwargs)
    except Exception as e:
        logger.warning("Failed to create embedding model: %s", e)
        return None

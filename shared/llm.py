"""Shared LLM utilities"""
from typing import Literal, Optional

from dotenv import load_dotenv
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from shared.config import config
from shared.logger import get_logger

# Provider SDKs read extra settings (OPENAI_BASE_URL, ANTHROPIC_BASE_URL, ...) straight from the environment.
load_dotenv()

logger = get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You summarize documents for business users. Reply with a concise summary "
    "of the key points in plain prose, without preamble."
)
MAX_SUMMARY_INPUT_CHARS = 48_000


def _detect_provider(model: str) -> Literal["openai", "anthropic"]:
    """Detect provider from model name."""
    if model.startswith("claude-"):
        return "anthropic"
    return "openai"


def get_llm(
    model: str = config.default_llm_model,
    temperature: float = 0.2,
    api_key: Optional[str] = None,
) -> BaseChatModel:
    """
    Get a configured chat model for OpenAI or Anthropic models.

    Args:
        model: Model name (e.g., "gpt-4o-mini", "claude-3-5-haiku-latest")
        temperature: Temperature setting
        api_key: Optional API key override (provider-specific)

    Returns:
        Configured ChatOpenAI or ChatAnthropic instance
    """
    provider = _detect_provider(model)

    if provider == "anthropic":
        api_key = api_key or config.anthropic_api_key
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY not found in environment")
        return ChatAnthropic(model=model, anthropic_api_key=api_key, temperature=temperature)

    api_key = api_key or config.openai_api_key
    if not api_key:
        raise ValueError("OPENAI_API_KEY not found in environment")
    return ChatOpenAI(model=model, api_key=api_key, temperature=temperature)


def message_text(content) -> str:
    """Flatten a chat message's content into plain text."""
    if isinstance(content, str):
        return content
    text = ""
    for block in content or []:
        if isinstance(block, dict) and block.get("type") == "text":
            text += block.get("text", "")
        elif isinstance(block, str):
            text += block
    return text


class LLMSummarizer:
    """Summarizer backed by a LangChain chat model."""

    def __init__(self, model: str = config.default_llm_model, temperature: float = 0.2):
        self.model = model
        self.temperature = temperature

    async def summarize(self, text: str, api_key: Optional[str] = None) -> str:
        llm = get_llm(self.model, temperature=self.temperature, api_key=api_key)
        if len(text) > MAX_SUMMARY_INPUT_CHARS:
            logger.info("Truncating summary input", extra={"chars": len(text)})
            text = text[:MAX_SUMMARY_INPUT_CHARS]
        response = await llm.ainvoke(
            [SystemMessage(content=SUMMARY_SYSTEM_PROMPT), HumanMessage(content=text)]
        )
        return message_text(response.content).strip()

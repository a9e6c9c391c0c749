from memagent.llm.base import ModelProvider, ModelResponse
from memagent.llm.anthropic_client import AnthropicClient
from memagent.llm.openai_client import OpenAIClient

__all__ = [
    "ModelProvider",
    "ModelResponse",
    "AnthropicClient",
    "OpenAIClient",
]

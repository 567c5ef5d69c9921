"""Provider adapters: canonical request/response model and per-backend translators."""

from tern.providers.anthropic import AnthropicProvider
from tern.providers.base import ModelInfo, Provider
from tern.providers.factory import create_provider
from tern.providers.openai import AzureOpenAIProvider, OpenAIProvider
from tern.providers.qwen import QwenProvider, ToolCallFormat

__all__ = [
    "AnthropicProvider",
    "AzureOpenAIProvider",
    "ModelInfo",
    "OpenAIProvider",
    "Provider",
    "QwenProvider",
    "ToolCallFormat",
    "create_provider",
]

"""Pick a provider adapter from Settings.

Precedence: Qwen, then Azure, then OpenAI (hosted or local), then Anthropic.
The backend family and its tool-call format come from configuration only.
"""

from __future__ import annotations

import logging

import httpx

from tern.config import Settings
from tern.errors import ConfigurationError
from tern.providers.anthropic import AnthropicProvider
from tern.providers.base import Provider
from tern.providers.openai import AzureOpenAIProvider, OpenAIProvider
from tern.providers.qwen import QwenProvider

logger = logging.getLogger(__name__)


def create_provider(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Provider:
    timeouts = {
        "timeout_connect": settings.api_timeout_connect,
        "timeout_read": settings.api_timeout_read,
        "transport": transport,
    }

    if settings.dashscope_api_key or settings.qwen_base_url:
        kwargs = {
            "default_model": settings.model or settings.qwen_model,
            "tool_format": settings.qwen_tool_format,
            "thinking": settings.qwen_thinking,
            "thinking_budget": settings.qwen_thinking_budget or None,
            "timeout_connect": settings.api_timeout_connect,
            "transport": transport,
        }
        if settings.qwen_base_url:
            provider: Provider = QwenProvider(
                settings.dashscope_api_key,
                base_url=settings.qwen_base_url,
                local=not settings.dashscope_api_key,
                **kwargs,
            )
        else:
            provider = QwenProvider.dashscope(
                settings.dashscope_api_key, region=settings.qwen_region, **kwargs
            )
        logger.info("Using Qwen provider (%s format)", settings.qwen_tool_format)
        return provider

    if settings.azure_openai_api_key and settings.azure_openai_resource:
        if not settings.azure_openai_deployment:
            raise ConfigurationError("AZURE_OPENAI_DEPLOYMENT is required for Azure OpenAI")
        logger.info("Using Azure OpenAI provider (%s)", settings.azure_openai_deployment)
        return AzureOpenAIProvider(
            settings.azure_openai_api_key,
            resource=settings.azure_openai_resource,
            deployment=settings.azure_openai_deployment,
            api_version=settings.azure_openai_api_version,
            **timeouts,
        )

    if settings.openai_base_url and not settings.openai_api_key:
        logger.info("Using local OpenAI-compatible server at %s", settings.openai_base_url)
        return OpenAIProvider.local_server(
            settings.openai_base_url,
            default_model=settings.model or settings.openai_local_model,
            **timeouts,
        )

    if settings.openai_api_key:
        logger.info("Using OpenAI provider")
        kwargs = {"base_url": settings.openai_base_url} if settings.openai_base_url else {}
        if settings.model:
            kwargs["default_model"] = settings.model
        return OpenAIProvider(settings.openai_api_key, **kwargs, **timeouts)

    if settings.anthropic_api_key or settings.anthropic_auth_token:
        logger.info("Using Anthropic provider")
        kwargs = {"default_model": settings.model} if settings.model else {}
        return AnthropicProvider(
            settings.anthropic_api_key,
            auth_token=settings.anthropic_auth_token,
            base_url=settings.anthropic_base_url,
            **kwargs,
            **timeouts,
        )

    raise ConfigurationError(
        "No LLM provider configured. Set one of: DASHSCOPE_API_KEY or QWEN_BASE_URL (Qwen), "
        "AZURE_OPENAI_API_KEY + AZURE_OPENAI_RESOURCE (Azure), OPENAI_API_KEY or "
        "OPENAI_BASE_URL (OpenAI / local server), ANTHROPIC_API_KEY or ANTHROPIC_AUTH_TOKEN "
        "(Anthropic)."
    )

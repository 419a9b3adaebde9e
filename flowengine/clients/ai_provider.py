# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
AI Provider Client

`chat(provider, request, api_key, base_url) -> ChatResponse` over httpx.
Anthropic uses the Messages API; every other provider is treated as
OpenAI-compatible (`/chat/completions`).
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

from flowengine.core.logging import get_logger
from flowengine.workflow.models import TokenUsage

logger = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    model: str
    messages: List[ChatMessage]
    temperature: float = 0.7
    max_tokens: int = Field(default=2048, alias="maxTokens")

    model_config = ConfigDict(populate_by_name=True)


class ChatResponse(BaseModel):
    content: str
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class AIProviderError(Exception):
    """Provider call failed. `infrastructure` marks transport-level failures."""

    def __init__(self, message: str, provider: str, status_code: Optional[int] = None,
                 infrastructure: bool = False):
        self.provider = provider
        self.status_code = status_code
        self.infrastructure = infrastructure
        super().__init__(message)


class AIProviderClient(Protocol):
    async def chat(self, provider: str, request: ChatRequest, api_key: Optional[str],
                   base_url: Optional[str]) -> ChatResponse:
        ...


class HttpAIProviderClient:
    """
    HTTP client for chat-completion style providers.

    The caller enforces the overall deadline; `timeout` here bounds each
    individual HTTP operation.
    """

    def __init__(self, provider_urls: Optional[Dict[str, str]] = None, timeout: float = 60.0):
        self.provider_urls = provider_urls or {}
        self.timeout = timeout

    def _base_url(self, provider: str, base_url: Optional[str]) -> str:
        url = base_url or self.provider_urls.get(provider)
        if not url:
            raise AIProviderError(f"No base URL configured for provider '{provider}'", provider)
        return url.rstrip("/")

    async def chat(self, provider: str, request: ChatRequest, api_key: Optional[str],
                   base_url: Optional[str] = None) -> ChatResponse:
        url = self._base_url(provider, base_url)
        if provider == "anthropic":
            endpoint, headers, body = self._anthropic_payload(url, request, api_key)
        else:
            endpoint, headers, body = self._openai_payload(url, request, api_key)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(endpoint, json=body, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            raise AIProviderError(
                f"{provider} returned HTTP {e.response.status_code}",
                provider,
                status_code=e.response.status_code,
                infrastructure=e.response.status_code >= 500,
            )
        except httpx.RequestError as e:
            raise AIProviderError(f"{provider} unreachable: {e.__class__.__name__}", provider,
                                  infrastructure=True)

        if provider == "anthropic":
            return self._parse_anthropic(payload, request)
        return self._parse_openai(payload, request)

    def _openai_payload(self, url: str, request: ChatRequest, api_key: Optional[str]):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        body = {
            "model": request.model,
            "messages": [m.model_dump() for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        return f"{url}/chat/completions", headers, body

    def _anthropic_payload(self, url: str, request: ChatRequest, api_key: Optional[str]):
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if api_key:
            headers["x-api-key"] = api_key
        system = "\n".join(m.content for m in request.messages if m.role == "system")
        body: Dict[str, Any] = {
            "model": request.model,
            "messages": [m.model_dump() for m in request.messages if m.role != "system"],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if system:
            body["system"] = system
        return f"{url}/messages", headers, body

    def _parse_openai(self, payload: Dict[str, Any], request: ChatRequest) -> ChatResponse:
        try:
            content = payload["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise AIProviderError("Malformed completion response", "openai")
        usage = payload.get("usage") or {}
        return ChatResponse(
            content=content,
            model=payload.get("model") or request.model,
            usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            ),
        )

    def _parse_anthropic(self, payload: Dict[str, Any], request: ChatRequest) -> ChatResponse:
        blocks = payload.get("content") or []
        content = "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        usage = payload.get("usage") or {}
        prompt = usage.get("input_tokens", 0)
        completion = usage.get("output_tokens", 0)
        return ChatResponse(
            content=content,
            model=payload.get("model") or request.model,
            usage=TokenUsage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
            ),
        )

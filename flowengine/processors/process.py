# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
PROCESS node: renders a prompt from upstream data and calls an AI provider.
"""

import asyncio

from flowengine.clients.ai_provider import AIProviderClient, AIProviderError, ChatMessage, ChatRequest
from flowengine.clients.credentials import AIConfig, CredentialStore
from flowengine.core.config import Config
from flowengine.core.errors import FlowEngineError
from flowengine.core.logging import get_logger, log_event
from flowengine.workflow.context import ExecutionContext
from flowengine.workflow.models import NodeOutput, NodeType, WorkflowNode
from flowengine.workflow.variables import render_template

from .base import NodeProcessor

logger = get_logger(__name__)


class ProcessProcessor(NodeProcessor):
    """
    Config:
        aiConfigId: credential reference (required)
        model: overrides the config's default model
        systemPrompt, prompt: templates with {{ref.path}} tokens
        temperature, maxTokens, timeoutSeconds
    """

    node_type = NodeType.PROCESS

    def __init__(self, ai_client: AIProviderClient, credentials: CredentialStore, config: Config):
        self.ai_client = ai_client
        self.credentials = credentials
        self.config = config

    async def _resolve_ai_config(self, config_id: str, context: ExecutionContext) -> AIConfig:
        # One credential lookup per config id per run
        if config_id not in context.ai_configs:
            context.ai_configs[config_id] = await self.credentials.resolve(config_id, context.organization_id)
        return context.ai_configs[config_id]

    async def run(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutput:
        cfg = node.config
        config_id = cfg.get("aiConfigId")
        if not config_id:
            return NodeOutput.failure(node, "PROCESS node requires 'aiConfigId'")

        try:
            ai_config = await self._resolve_ai_config(config_id, context)
        except FlowEngineError as e:
            return NodeOutput.failure(node, e.message)

        scope = self.scope(context)
        prompt = render_template(cfg.get("prompt", ""), scope).strip()
        if not prompt:
            return NodeOutput.failure(node, "PROCESS node prompt resolved to empty text")

        messages = []
        system_prompt = render_template(cfg.get("systemPrompt", ""), scope).strip()
        if system_prompt:
            messages.append(ChatMessage(role="system", content=system_prompt))
        messages.append(ChatMessage(role="user", content=prompt))

        request = ChatRequest(
            model=cfg.get("model") or ai_config.model,
            messages=messages,
            temperature=cfg.get("temperature", self.config.ai_default_temperature),
            max_tokens=cfg.get("maxTokens", self.config.ai_default_max_tokens),
        )
        timeout = cfg.get("timeoutSeconds") or self.config.ai_request_timeout

        try:
            response = await asyncio.wait_for(
                self.ai_client.chat(ai_config.provider, request, ai_config.api_key, ai_config.base_url),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            log_event(logger, "AI provider timeout", "WARNING",
                      execution_id=context.execution_id, node_id=node.id,
                      provider=ai_config.provider, timeout=timeout, error_kind="infrastructure")
            return NodeOutput.failure(node, f"AI provider request timed out after {timeout}s")
        except AIProviderError as e:
            log_event(logger, "AI provider error", "ERROR",
                      execution_id=context.execution_id, node_id=node.id,
                      provider=e.provider, status_code=e.status_code,
                      error_kind="infrastructure" if e.infrastructure else "node")
            return NodeOutput.failure(node, f"AI provider error: {e}")

        return NodeOutput.success(
            node,
            {"result": response.content, "model": response.model},
            token_usage=response.usage,
        )

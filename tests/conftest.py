# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Test Fixtures

In-memory store, mocked AI provider and sandbox, and the default processor
registry wired the way the application wires it.
"""

from typing import Any, Dict

import pytest
from unittest.mock import AsyncMock

from flowengine.clients.ai_provider import ChatResponse
from flowengine.clients.credentials import ConfigCredentialStore
from flowengine.clients.sandbox import SandboxResult
from flowengine.core.config import Config
from flowengine.processors import build_default_registry
from flowengine.services.approval_service import ApprovalService
from flowengine.services.workflow_service import WorkflowService
from flowengine.storage.store import MemoryStore
from flowengine.workflow.executor import WorkflowEngine
from flowengine.workflow.models import TokenUsage


# ============================================================================
# Core collaborators
# ============================================================================

@pytest.fixture
def config(tmp_path):
    """Config pointing at a temp directory"""
    return Config(
        data_path=str(tmp_path / "data"),
        workflows_path=str(tmp_path / "workflows"),
        store_backend="memory",
        queue_max_concurrent=2,
        queue_task_timeout=10.0,
        ai_configs={"default": {"provider": "openai", "model": "gpt-4o-mini"}},
    )


@pytest.fixture
def store():
    return MemoryStore()


async def echo_chat(provider, request, api_key, base_url=None):
    """Provider stand-in: echoes the user prompt"""
    return ChatResponse(
        content=f"echo: {request.messages[-1].content}",
        model=request.model,
        usage=TokenUsage(prompt_tokens=3, completion_tokens=2, total_tokens=5),
    )


@pytest.fixture
def ai_client():
    """Mock AI provider client"""
    client = AsyncMock()
    client.chat = AsyncMock(side_effect=echo_chat)
    return client


@pytest.fixture
def credentials(config):
    return ConfigCredentialStore(config.ai_configs)


@pytest.fixture
def sandbox():
    """Mock code sandbox"""
    box = AsyncMock()
    box.run = AsyncMock(return_value=SandboxResult(success=True, output={"doubled": 10}, logs=["ran"]))
    return box


@pytest.fixture
def approvals(store):
    return ApprovalService(store, default_timeout=3600)


@pytest.fixture
def registry(ai_client, credentials, sandbox, approvals, config):
    return build_default_registry(ai_client, credentials, sandbox, approvals, config)


@pytest.fixture
def engine(registry, store):
    return WorkflowEngine(registry, store)


@pytest.fixture
def workflow_service(config, engine):
    return WorkflowService(config.workflows_path, engine)


# ============================================================================
# Workflow builders
# ============================================================================

@pytest.fixture
def echo_workflow() -> Dict[str, Any]:
    """INPUT(text) -> PROCESS(echo) -> OUTPUT"""
    return {
        "id": "echo",
        "name": "Echo",
        "nodes": [
            {"id": "in", "type": "INPUT", "config": {"fields": [{"name": "text", "required": True}]}},
            {"id": "ask", "type": "PROCESS", "name": "Ask",
             "config": {"aiConfigId": "default", "prompt": "{{input.text}}"}},
            {"id": "out", "type": "OUTPUT", "config": {"fields": {"answer": "{{ask.result}}"}}},
        ],
        "edges": [
            {"source": "in", "target": "ask"},
            {"source": "ask", "target": "out"},
        ],
    }


@pytest.fixture
def branching_workflow() -> Dict[str, Any]:
    """INPUT -> LOGIC(input.x > 0) -> {true: positive, false: non-positive}"""
    return {
        "id": "sign",
        "name": "Sign",
        "nodes": [
            {"id": "in", "type": "INPUT"},
            {"id": "check", "type": "LOGIC", "config": {"expression": "input.x > 0"}},
            {"id": "pos", "type": "OUTPUT", "config": {"template": "positive"}},
            {"id": "neg", "type": "OUTPUT", "config": {"template": "non-positive"}},
        ],
        "edges": [
            {"source": "in", "target": "check"},
            {"source": "check", "target": "pos", "sourceHandle": "true"},
            {"source": "check", "target": "neg", "sourceHandle": "false"},
        ],
    }


@pytest.fixture
def approval_workflow() -> Dict[str, Any]:
    """INPUT -> APPROVAL -> LOGIC(approved) -> {true: ship, false: stop}"""
    return {
        "id": "release",
        "name": "Release",
        "nodes": [
            {"id": "in", "type": "INPUT"},
            {"id": "gate", "type": "APPROVAL", "config": {
                "title": "Release {{input.version}}?",
                "approvers": [{"type": "user", "id": "alice"}, {"type": "user", "id": "bob"}],
                "requiredApprovals": 1,
            }},
            {"id": "decide", "type": "LOGIC", "config": {"expression": "gate.approved == true"}},
            {"id": "ship", "type": "OUTPUT", "config": {"template": "shipped {{input.version}}"}},
            {"id": "stop", "type": "OUTPUT", "config": {"template": "stopped"}},
        ],
        "edges": [
            {"source": "in", "target": "gate"},
            {"source": "gate", "target": "decide"},
            {"source": "decide", "target": "ship", "sourceHandle": "true"},
            {"source": "decide", "target": "stop", "sourceHandle": "false"},
        ],
    }

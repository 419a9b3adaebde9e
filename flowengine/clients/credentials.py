# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Credential Store

Resolves an AI config reference id to provider, model, endpoint and the
decrypted API key. Keys are read from the environment only.
"""

from typing import Dict, Optional, Protocol

from pydantic import BaseModel

from flowengine.core.config import get_provider_api_key
from flowengine.core.errors import NotFoundError


class AIConfig(BaseModel):
    id: str
    provider: str
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None


class CredentialStore(Protocol):
    async def resolve(self, config_id: str, organization_id: Optional[str] = None) -> AIConfig:
        ...


class ConfigCredentialStore:
    """AI configs declared under `ai.configs` in YAML, keys from env"""

    def __init__(self, configs: Dict[str, Dict[str, str]]):
        self.configs = configs or {}

    async def resolve(self, config_id: str, organization_id: Optional[str] = None) -> AIConfig:
        entry = self.configs.get(config_id)
        if entry is None:
            raise NotFoundError("AI config", config_id)
        provider = entry.get("provider", "openai")
        return AIConfig(
            id=config_id,
            provider=provider,
            model=entry.get("model", ""),
            api_key=get_provider_api_key(provider),
            base_url=entry.get("base_url"),
        )

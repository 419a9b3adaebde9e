# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
flowengine configuration - single source of truth.
YAML is king. Env vars ONLY for secrets.

- ALL configuration in plain text (YAML)
- NO hidden state - everything inspectable via `cat` and `grep`
"""

import os
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional


DEFAULT_CONFIG_PATH = "configs/engine.yaml"


# =============================================================================
# CONFIGURATION DATACLASS
# =============================================================================

@dataclass(frozen=True)
class Config:
    """
    Immutable engine configuration.
    All values from YAML. No hidden state.
    """

    # -- Server --
    host: str = "0.0.0.0"
    port: int = 8000

    # -- Paths --
    data_path: str = "./data"
    workflows_path: str = "./workflows"

    # -- Storage --
    store_backend: str = "file"  # file | memory

    # -- Task queue --
    queue_max_concurrent: int = 5
    queue_task_timeout: float = 300.0
    queue_task_retention: float = 1800.0
    queue_cleanup_interval: float = 60.0
    queue_stuck_threshold: float = 900.0
    queue_snapshot_retention: float = 86400.0

    # -- Scheduler --
    scheduler_timezone: str = "UTC"
    scheduler_retry_base_delay: float = 1.0
    scheduler_retry_max_delay: float = 60.0
    scheduler_max_logs_per_trigger: int = 200

    # -- Approvals --
    approval_default_timeout: int = 86400
    approval_sweep_interval: float = 60.0
    approval_retention: float = 604800.0

    # -- AI providers --
    ai_request_timeout: float = 60.0
    ai_default_temperature: float = 0.7
    ai_default_max_tokens: int = 2048
    ai_provider_urls: Dict[str, str] = field(default_factory=lambda: {
        "openai": "https://api.openai.com/v1",
        "anthropic": "https://api.anthropic.com/v1",
    })
    # config id -> {provider, model, base_url}; keys come from env
    ai_configs: Dict[str, Dict[str, str]] = field(default_factory=dict)

    # -- Code sandbox --
    code_default_timeout_ms: int = 2000
    code_min_timeout_ms: int = 100
    code_max_timeout_ms: int = 10000
    code_max_log_lines: int = 200

    # -- Logging --
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def tasks_path(self) -> Path:
        return Path(self.data_path) / "store"

    def clamp_code_timeout(self, timeout_ms: Optional[int]) -> int:
        """Clamp a CODE node timeout into the allowed window."""
        if not timeout_ms:
            return self.code_default_timeout_ms
        return max(self.code_min_timeout_ms, min(int(timeout_ms), self.code_max_timeout_ms))


# =============================================================================
# SECRETS - The ONLY thing from environment variables
# =============================================================================

def get_provider_api_key(provider: str) -> Optional[str]:
    """API keys cannot be in version control."""
    return os.getenv(f"FLOWENGINE_{provider.upper()}_API_KEY")


def get_webhook_secret_override() -> Optional[str]:
    """Optional global webhook secret for triggers without their own."""
    return os.getenv("FLOWENGINE_WEBHOOK_SECRET")


# =============================================================================
# LOADER
# =============================================================================

def load_config(path: str = DEFAULT_CONFIG_PATH) -> Config:
    """
    Load configuration from YAML.
    Returns defaults if file doesn't exist.
    """
    if not Path(path).exists():
        return Config()

    with open(path) as f:
        y = yaml.safe_load(f) or {}

    # Helper to safely navigate nested dicts
    def get(d: dict, *keys, default=None):
        for k in keys:
            if not isinstance(d, dict):
                return default
            d = d.get(k, {})
        return d if d != {} else default

    defaults = Config()

    return Config(
        # Server
        host=get(y, "server", "host") or defaults.host,
        port=get(y, "server", "port") or defaults.port,

        # Paths
        data_path=get(y, "paths", "data") or defaults.data_path,
        workflows_path=get(y, "paths", "workflows") or defaults.workflows_path,

        # Storage
        store_backend=get(y, "storage", "backend") or defaults.store_backend,

        # Queue
        queue_max_concurrent=get(y, "queue", "max_concurrent") or defaults.queue_max_concurrent,
        queue_task_timeout=get(y, "queue", "task_timeout") or defaults.queue_task_timeout,
        queue_task_retention=get(y, "queue", "task_retention") or defaults.queue_task_retention,
        queue_cleanup_interval=get(y, "queue", "cleanup_interval") or defaults.queue_cleanup_interval,
        queue_stuck_threshold=get(y, "queue", "stuck_threshold") or defaults.queue_stuck_threshold,
        queue_snapshot_retention=get(y, "queue", "snapshot_retention") or defaults.queue_snapshot_retention,

        # Scheduler
        scheduler_timezone=get(y, "scheduler", "timezone") or defaults.scheduler_timezone,
        scheduler_retry_base_delay=get(y, "scheduler", "retry", "base_delay") or defaults.scheduler_retry_base_delay,
        scheduler_retry_max_delay=get(y, "scheduler", "retry", "max_delay") or defaults.scheduler_retry_max_delay,
        scheduler_max_logs_per_trigger=get(y, "scheduler", "max_logs_per_trigger") or defaults.scheduler_max_logs_per_trigger,

        # Approvals
        approval_default_timeout=get(y, "approvals", "default_timeout") or defaults.approval_default_timeout,
        approval_sweep_interval=get(y, "approvals", "sweep_interval") or defaults.approval_sweep_interval,
        approval_retention=get(y, "approvals", "retention") or defaults.approval_retention,

        # AI
        ai_request_timeout=get(y, "ai", "request_timeout") or defaults.ai_request_timeout,
        ai_default_temperature=get(y, "ai", "temperature") or defaults.ai_default_temperature,
        ai_default_max_tokens=get(y, "ai", "max_tokens") or defaults.ai_default_max_tokens,
        ai_provider_urls=get(y, "ai", "providers") or defaults.ai_provider_urls,
        ai_configs=get(y, "ai", "configs") or {},

        # Code
        code_default_timeout_ms=get(y, "code", "default_timeout_ms") or defaults.code_default_timeout_ms,
        code_min_timeout_ms=get(y, "code", "min_timeout_ms") or defaults.code_min_timeout_ms,
        code_max_timeout_ms=get(y, "code", "max_timeout_ms") or defaults.code_max_timeout_ms,
        code_max_log_lines=get(y, "code", "max_log_lines") or defaults.code_max_log_lines,

        # Logging
        log_level=os.getenv("LOG_LEVEL") or get(y, "logging", "level") or defaults.log_level,
        log_format=get(y, "logging", "format") or defaults.log_format,
    )


# =============================================================================
# GLOBAL INSTANCE
# =============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create global config instance."""
    global _config
    if _config is None:
        config_path = os.getenv("FLOWENGINE_CONFIG_PATH", DEFAULT_CONFIG_PATH)
        _config = load_config(config_path)
    return _config


def reload_config() -> Config:
    """Force reload configuration."""
    global _config
    _config = None
    return get_config()

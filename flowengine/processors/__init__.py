# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Node processors, one per node type, and the default registry wiring.
"""

from .base import NodeProcessor, ProcessorRegistry
from .input import InputProcessor
from .process import ProcessProcessor
from .code import CodeProcessor
from .logic import LogicProcessor
from .approval import ApprovalProcessor
from .output import OutputProcessor


def build_default_registry(ai_client, credentials, sandbox, approvals, config) -> ProcessorRegistry:
    """Register a processor for every node type"""
    registry = ProcessorRegistry()
    registry.register(InputProcessor())
    registry.register(ProcessProcessor(ai_client, credentials, config))
    registry.register(CodeProcessor(sandbox, config))
    registry.register(LogicProcessor())
    registry.register(ApprovalProcessor(approvals))
    registry.register(OutputProcessor())
    return registry


__all__ = [
    "NodeProcessor",
    "ProcessorRegistry",
    "InputProcessor",
    "ProcessProcessor",
    "CodeProcessor",
    "LogicProcessor",
    "ApprovalProcessor",
    "OutputProcessor",
    "build_default_registry",
]

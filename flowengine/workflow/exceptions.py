# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow Exceptions

Engine-internal exceptions. None of these escape WorkflowEngine.execute;
they are folded into a FAILED ExecutionResult.
"""


class WorkflowException(Exception):
    """Base exception for the workflow engine"""


class WorkflowValidationError(WorkflowException):
    """Graph or input rejected before any node runs"""
    def __init__(self, message: str, field: str = None):
        self.message = message
        self.field = field
        super().__init__(message)


class NodeExecutionException(WorkflowException):
    """Node execution failed"""
    def __init__(self, node_id: str, node_type: str, message: str, context: dict = None):
        self.node_id = node_id
        self.node_type = node_type
        self.context = context or {}
        super().__init__(f"Node '{node_id}' ({node_type}) failed: {message}")


class ContextWriteError(WorkflowException):
    """A node output slot was written twice in one run"""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Output for node '{node_id}' already recorded in this run")


class SuspensionError(WorkflowException):
    """Suspended run snapshot is missing, discarded or already resumed"""
    def __init__(self, approval_request_id: str, reason: str):
        self.approval_request_id = approval_request_id
        self.reason = reason
        super().__init__(f"Cannot resume approval '{approval_request_id}': {reason}")

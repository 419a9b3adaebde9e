# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow Models

Pydantic models for workflow graphs, node outputs and execution results.
Wire names are camelCase (aliases); attributes are snake_case.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


def now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class NodeType(str, Enum):
    """Closed set of executable node types"""
    INPUT = "INPUT"
    PROCESS = "PROCESS"
    CODE = "CODE"
    LOGIC = "LOGIC"
    APPROVAL = "APPROVAL"
    OUTPUT = "OUTPUT"


# Legacy node types folded into the current set
LEGACY_TYPE_MAP = {
    "DATA": NodeType.INPUT,
    "IMAGE": NodeType.INPUT,
    "VIDEO": NodeType.INPUT,
    "AUDIO": NodeType.INPUT,
    "HTTP": NodeType.PROCESS,
    "IMAGE_GEN": NodeType.PROCESS,
    "CONDITION": NodeType.LOGIC,
}

# Legacy node types with no executable counterpart
REJECTED_LEGACY_TYPES = {"TRIGGER", "SWITCH", "LOOP", "MERGE", "NOTIFICATION", "GROUP"}


def normalize_node_type(value: Any) -> NodeType:
    """Map a raw type tag (any case, legacy or current) to a NodeType."""
    if isinstance(value, NodeType):
        return value
    tag = str(value or "").strip().upper()
    if tag in NodeType.__members__:
        return NodeType(tag)
    if tag in LEGACY_TYPE_MAP:
        return LEGACY_TYPE_MAP[tag]
    if tag in REJECTED_LEGACY_TYPES:
        raise ValueError(f"Legacy node type '{tag}' is no longer supported")
    raise ValueError(f"Unknown node type '{value}'")


class WorkflowNode(BaseModel):
    """Typed unit of work. Config shape is owned by the node's processor."""
    id: str
    type: NodeType
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        return normalize_node_type(value)

    @property
    def label(self) -> str:
        return self.name or self.id


class WorkflowEdge(BaseModel):
    """Directed edge; source_handle marks a LOGIC branch"""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")


class WorkflowGraph(BaseModel):
    """Immutable-per-run graph snapshot"""
    model_config = ConfigDict(populate_by_name=True)

    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge] = Field(default_factory=list)
    global_variables: Dict[str, Any] = Field(default_factory=dict, alias="globalVariables")

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming(self, node_id: str) -> List[int]:
        """Indexes of edges ending at node_id"""
        return [i for i, edge in enumerate(self.edges) if edge.target == node_id]

    def outgoing(self, node_id: str) -> List[int]:
        """Indexes of edges starting at node_id"""
        return [i for i, edge in enumerate(self.edges) if edge.source == node_id]


class WorkflowDefinition(WorkflowGraph):
    """Stored workflow: a graph plus ownership metadata"""
    id: str
    name: str
    description: Optional[str] = None
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    active: bool = True

    def to_graph(self) -> WorkflowGraph:
        return WorkflowGraph(
            nodes=self.nodes,
            edges=self.edges,
            global_variables=self.global_variables,
        )


class NodeStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SUSPENDED = "suspended"


class TokenUsage(BaseModel):
    """Token accounting for AI-calling nodes"""
    model_config = ConfigDict(populate_by_name=True)

    prompt_tokens: int = Field(default=0, alias="promptTokens")
    completion_tokens: int = Field(default=0, alias="completionTokens")
    total_tokens: int = Field(default=0, alias="totalTokens")

    def add(self, other: Optional["TokenUsage"]) -> "TokenUsage":
        if other is None:
            return self
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class NodeOutput(BaseModel):
    """Result of one node invocation"""
    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(alias="nodeId")
    node_name: Optional[str] = Field(default=None, alias="nodeName")
    node_type: Optional[NodeType] = Field(default=None, alias="nodeType")
    status: NodeStatus
    data: Dict[str, Any] = Field(default_factory=dict)
    token_usage: Optional[TokenUsage] = Field(default=None, alias="tokenUsage")
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    duration_ms: Optional[int] = Field(default=None, alias="durationMs")
    error: Optional[str] = None
    approval_request_id: Optional[str] = Field(default=None, alias="approvalRequestId")

    @classmethod
    def success(cls, node: WorkflowNode, data: Dict[str, Any], **kwargs) -> "NodeOutput":
        return cls(node_id=node.id, node_name=node.label, node_type=node.type,
                   status=NodeStatus.SUCCESS, data=data, **kwargs)

    @classmethod
    def failure(cls, node: WorkflowNode, error: str, **kwargs) -> "NodeOutput":
        return cls(node_id=node.id, node_name=node.label, node_type=node.type,
                   status=NodeStatus.ERROR, error=error, **kwargs)

    @classmethod
    def suspended(cls, node: WorkflowNode, approval_request_id: str, data: Optional[Dict[str, Any]] = None) -> "NodeOutput":
        return cls(node_id=node.id, node_name=node.label, node_type=node.type,
                   status=NodeStatus.SUSPENDED, data=data or {},
                   approval_request_id=approval_request_id)


class ExecutionStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NODE = "node"
    INFRASTRUCTURE = "infrastructure"


class ExecutionResult(BaseModel):
    """Terminal (or terminal-for-now) outcome of a run"""
    model_config = ConfigDict(populate_by_name=True)

    execution_id: str = Field(alias="executionId")
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    status: ExecutionStatus
    output: Dict[str, Any] = Field(default_factory=dict)
    node_outputs: Dict[str, NodeOutput] = Field(default_factory=dict, alias="nodeOutputs")
    error: Optional[str] = None
    failed_node_id: Optional[str] = Field(default=None, alias="failedNodeId")
    error_kind: Optional[ErrorKind] = Field(default=None, alias="errorKind")
    approval_request_id: Optional[str] = Field(default=None, alias="approvalRequestId")
    warnings: List[str] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage, alias="tokenUsage")
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    duration_ms: Optional[int] = Field(default=None, alias="durationMs")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

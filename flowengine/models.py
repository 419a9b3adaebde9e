# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Service Models

Pydantic models for tasks, triggers, trigger logs and approval requests.
Stored records use attribute names; API payloads use camelCase aliases.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from flowengine.workflow.models import ExecutionResult


class StoredModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# TASKS
# =============================================================================

class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskKind(str, Enum):
    EXECUTE = "execute"
    RESUME = "resume"
    RETRY = "retry"


class Task(StoredModel):
    """Queue unit: one asynchronous run, approval resumption or failed-run retry"""
    id: str
    kind: TaskKind = TaskKind.EXECUTE
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    submitted_by: Optional[str] = Field(default=None, alias="submittedBy")
    input: Dict[str, Any] = Field(default_factory=dict)
    approval_request_id: Optional[str] = Field(default=None, alias="approvalRequestId")
    execution_id: Optional[str] = Field(default=None, alias="executionId")
    status: TaskStatus = TaskStatus.PENDING
    created_at: str = Field(alias="createdAt")
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None


# =============================================================================
# TRIGGERS
# =============================================================================

class TriggerType(str, Enum):
    SCHEDULE = "SCHEDULE"
    WEBHOOK = "WEBHOOK"


class Trigger(StoredModel):
    id: str
    workflow_id: str = Field(alias="workflowId")
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    created_by_id: Optional[str] = Field(default=None, alias="createdById")
    type: TriggerType
    description: Optional[str] = None
    enabled: bool = True
    cron_expression: Optional[str] = Field(default=None, alias="cronExpression")
    timezone: Optional[str] = None
    webhook_path: Optional[str] = Field(default=None, alias="webhookPath")
    webhook_secret: Optional[str] = Field(default=None, alias="webhookSecret")
    input_template: Dict[str, Any] = Field(default_factory=dict, alias="inputTemplate")
    retry_on_fail: bool = Field(default=False, alias="retryOnFail")
    max_retries: int = Field(default=3, alias="maxRetries")
    trigger_count: int = Field(default=0, alias="triggerCount")
    last_triggered_at: Optional[str] = Field(default=None, alias="lastTriggeredAt")
    last_success_at: Optional[str] = Field(default=None, alias="lastSuccessAt")
    last_failure_at: Optional[str] = Field(default=None, alias="lastFailureAt")


class TriggerLogStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class TriggerLog(StoredModel):
    """One firing attempt of a trigger"""
    id: str
    trigger_id: str = Field(alias="triggerId")
    workflow_id: str = Field(alias="workflowId")
    attempt: int = 1
    status: TriggerLogStatus = TriggerLogStatus.RUNNING
    task_id: Optional[str] = Field(default=None, alias="taskId")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    input: Dict[str, Any] = Field(default_factory=dict)
    started_at: str = Field(alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    duration_ms: Optional[int] = Field(default=None, alias="durationMs")


# =============================================================================
# APPROVALS
# =============================================================================

class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class Decision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class TimeoutAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    ESCALATE = "ESCALATE"


class ApprovalPolicy(str, Enum):
    THRESHOLD = "threshold"
    UNANIMOUS = "unanimous"


class Approver(StoredModel):
    type: str = "user"
    id: str
    name: Optional[str] = None


class ApprovalDecision(StoredModel):
    user_id: str = Field(alias="userId")
    decision: Decision
    comment: Optional[str] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict, alias="customFields")
    decided_at: str = Field(alias="decidedAt")


class ApprovalRequest(StoredModel):
    id: str
    execution_id: str = Field(alias="executionId")
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    node_id: str = Field(alias="nodeId")
    title: str
    description: str = ""
    approvers: List[Approver]
    required_approvals: int = Field(default=1, alias="requiredApprovals")
    policy: ApprovalPolicy = ApprovalPolicy.THRESHOLD
    status: ApprovalStatus = ApprovalStatus.PENDING
    decisions: List[ApprovalDecision] = Field(default_factory=list)
    custom_fields: List[Dict[str, Any]] = Field(default_factory=list, alias="customFields")
    input_snapshot: Dict[str, Any] = Field(default_factory=dict, alias="inputSnapshot")
    timeout_action: TimeoutAction = Field(default=TimeoutAction.REJECT, alias="timeoutAction")
    final_decision: Optional[Decision] = Field(default=None, alias="finalDecision")
    expires_at: str = Field(alias="expiresAt")
    created_at: str = Field(alias="createdAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    escalated_at: Optional[str] = Field(default=None, alias="escalatedAt")

    @property
    def is_terminal(self) -> bool:
        return self.status != ApprovalStatus.PENDING

    @property
    def approved_count(self) -> int:
        return sum(1 for d in self.decisions if d.decision == Decision.APPROVE)

    @property
    def rejected_count(self) -> int:
        return sum(1 for d in self.decisions if d.decision == Decision.REJECT)


class DecisionRequest(BaseModel):
    """Body of POST /approvals/{id}/decisions"""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    decision: Decision
    comment: Optional[str] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict, alias="customFields")

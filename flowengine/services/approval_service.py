# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Approval Service

Owns ApprovalRequest state: creation by APPROVAL nodes, decisions,
expiry and cancellation. When a request reaches APPROVED, REJECTED or
EXPIRED the resume handler is invoked so the suspended run continues.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from flowengine.core.errors import ConflictError, NotFoundError, ValidationError
from flowengine.core.logging import get_service_logger, log_event
from flowengine.models import (
    ApprovalDecision, ApprovalPolicy, ApprovalRequest, ApprovalStatus,
    Approver, Decision, TimeoutAction,
)
from flowengine.storage.store import APPROVALS, SUSPENDED_RUNS, Store
from flowengine.workflow.models import now_iso

logger = get_service_logger("approvals")

ResumeHandler = Callable[[ApprovalRequest], Awaitable[Any]]

# Attempts at a conditional decision write before giving up
MAX_DECISION_ATTEMPTS = 3


class ApprovalService:
    """
    Manages approval requests for suspended runs.

    Responsibilities:
    - Create requests for APPROVAL nodes
    - Record decisions and apply the approval policy
    - Apply timeoutAction to overdue requests
    - Cancel requests and discard their suspended runs
    """

    def __init__(self, store: Store, default_timeout: int = 86400,
                 resume_handler: Optional[ResumeHandler] = None, retention: float = 604800.0):
        self.store = store
        self.default_timeout = default_timeout
        self.retention = retention
        self.resume_handler = resume_handler
        self._sweeper: Optional[asyncio.Task] = None

    @staticmethod
    def new_request_id() -> str:
        return f"apr_{uuid.uuid4().hex}"

    async def create_request(
        self,
        execution_id: str,
        node_id: str,
        title: str,
        approvers: List[Dict[str, Any]],
        workflow_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        description: str = "",
        required_approvals: int = 1,
        policy: str = "threshold",
        timeout_seconds: Optional[int] = None,
        timeout_action: str = "REJECT",
        custom_fields: Optional[List[Dict[str, Any]]] = None,
        input_snapshot: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> ApprovalRequest:
        if not approvers:
            raise ValidationError("At least one approver is required", field="approvers")
        if required_approvals < 1:
            raise ValidationError("requiredApprovals must be at least 1", field="requiredApprovals")

        now = datetime.now(timezone.utc)
        timeout = timeout_seconds or self.default_timeout
        request = ApprovalRequest(
            id=request_id or self.new_request_id(),
            execution_id=execution_id,
            workflow_id=workflow_id,
            organization_id=organization_id,
            node_id=node_id,
            title=title,
            description=description,
            approvers=[Approver.model_validate(a) for a in approvers],
            required_approvals=required_approvals,
            policy=ApprovalPolicy(policy),
            custom_fields=custom_fields or [],
            input_snapshot=input_snapshot or {},
            timeout_action=TimeoutAction(str(timeout_action).upper()),
            expires_at=(now + timedelta(seconds=timeout)).isoformat(),
            created_at=now.isoformat(),
        )
        if not await self.store.create(APPROVALS, request.id, request.to_record()):
            raise ConflictError("Approval request already exists", resource=request.id)

        log_event(logger, "Approval requested", execution_id=execution_id,
                  approval_request_id=request.id, node_id=node_id,
                  required_approvals=required_approvals, expires_at=request.expires_at)
        return request

    async def get_request(self, request_id: str) -> ApprovalRequest:
        record = await self.store.get(APPROVALS, request_id)
        if record is None:
            raise NotFoundError("ApprovalRequest", request_id)
        return ApprovalRequest.model_validate(record)

    async def list_pending(self, organization_id: Optional[str] = None) -> List[ApprovalRequest]:
        filters = {"status": ApprovalStatus.PENDING.value}
        if organization_id:
            filters["organization_id"] = organization_id
        return [ApprovalRequest.model_validate(r) for r in await self.store.list(APPROVALS, **filters)]

    async def submit_decision(
        self,
        request_id: str,
        user_id: str,
        decision: Decision,
        comment: Optional[str] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> ApprovalRequest:
        """Append a decision; the request turns terminal when the policy is met."""
        decision = Decision(decision)

        for _ in range(MAX_DECISION_ATTEMPTS):
            request = await self.get_request(request_id)
            if request.is_terminal:
                raise ConflictError(f"Approval request is already {request.status.value}", resource=request_id)
            if any(d.user_id == user_id for d in request.decisions):
                raise ConflictError(f"User {user_id} has already decided", resource=request_id)
            if datetime.fromisoformat(request.expires_at) <= datetime.now(timezone.utc):
                raise ConflictError("Approval request has expired", resource=request_id)

            previous = [d.to_record() for d in request.decisions]
            request.decisions.append(ApprovalDecision(
                user_id=user_id,
                decision=decision,
                comment=comment,
                custom_fields=custom_fields or {},
                decided_at=now_iso(),
            ))
            updates = {"decisions": [d.to_record() for d in request.decisions]}

            final = self._evaluate(request)
            if final is not None:
                updates.update({
                    "status": final.value,
                    "final_decision": Decision.APPROVE.value if final == ApprovalStatus.APPROVED else Decision.REJECT.value,
                    "completed_at": now_iso(),
                })

            record = await self.store.update(
                APPROVALS, request_id, updates,
                expected={"status": ApprovalStatus.PENDING.value, "decisions": previous},
            )
            if record is None:
                continue

            updated = ApprovalRequest.model_validate(record)
            log_event(logger, "Approval decision recorded", approval_request_id=request_id,
                      user_id=user_id, decision=decision.value, status=updated.status.value)
            if updated.is_terminal:
                await self._on_terminal(updated)
            return updated

        raise ConflictError("Approval request changed concurrently; retry", resource=request_id)

    def _evaluate(self, request: ApprovalRequest) -> Optional[ApprovalStatus]:
        """Terminal status implied by the decisions so far, if any"""
        if request.policy == ApprovalPolicy.UNANIMOUS and request.rejected_count > 0:
            return ApprovalStatus.REJECTED
        if len(request.decisions) >= request.required_approvals:
            if request.approved_count >= request.required_approvals:
                return ApprovalStatus.APPROVED
            return ApprovalStatus.REJECTED
        return None

    async def cancel(self, request_id: str, reason: Optional[str] = None) -> ApprovalRequest:
        """Cancel a pending request and discard its suspended run."""
        record = await self.store.update(
            APPROVALS, request_id,
            {"status": ApprovalStatus.CANCELLED.value, "completed_at": now_iso()},
            expected={"status": ApprovalStatus.PENDING.value},
        )
        if record is None:
            request = await self.get_request(request_id)
            raise ConflictError(f"Approval request is already {request.status.value}", resource=request_id)

        await self.store.update(
            SUSPENDED_RUNS, request_id,
            {"state": "discarded", "discarded_at": now_iso(), "discard_reason": reason},
            expected={"state": "suspended"},
        )
        log_event(logger, "Approval cancelled", "WARNING", approval_request_id=request_id, reason=reason)
        return ApprovalRequest.model_validate(record)

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[ApprovalRequest]:
        """Apply timeoutAction to every pending request past expiresAt."""
        now = now or datetime.now(timezone.utc)
        expired = []

        for request in await self.list_pending():
            if datetime.fromisoformat(request.expires_at) > now:
                continue

            if request.timeout_action == TimeoutAction.ESCALATE:
                if request.escalated_at is None:
                    await self.store.update(
                        APPROVALS, request.id, {"escalated_at": now.isoformat()},
                        expected={"status": ApprovalStatus.PENDING.value},
                    )
                    log_event(logger, "Approval overdue, escalated", "WARNING",
                              approval_request_id=request.id, execution_id=request.execution_id)
                continue

            final = Decision.APPROVE if request.timeout_action == TimeoutAction.APPROVE else Decision.REJECT
            record = await self.store.update(
                APPROVALS, request.id,
                {"status": ApprovalStatus.EXPIRED.value, "final_decision": final.value,
                 "completed_at": now.isoformat()},
                expected={"status": ApprovalStatus.PENDING.value},
            )
            if record is None:
                continue

            updated = ApprovalRequest.model_validate(record)
            log_event(logger, "Approval expired", "WARNING", approval_request_id=request.id,
                      timeout_action=request.timeout_action.value)
            expired.append(updated)
            await self._on_terminal(updated)

        return expired

    def build_outcome(self, request: ApprovalRequest) -> Dict[str, Any]:
        """Data injected as the APPROVAL node's output on resume"""
        custom_values: Dict[str, Any] = {}
        for d in request.decisions:
            custom_values.update(d.custom_fields)

        return {
            "approved": request.final_decision == Decision.APPROVE,
            "status": request.status.value,
            "finalDecision": request.final_decision.value if request.final_decision else None,
            "decisions": [d.to_wire() for d in request.decisions],
            "approvedCount": request.approved_count,
            "rejectedCount": request.rejected_count,
            "requiredApprovals": request.required_approvals,
            "title": request.title,
            "description": request.description,
            "comments": [d.comment for d in request.decisions if d.comment],
            "customFields": custom_values,
        }

    async def prune_terminal(self, now: Optional[datetime] = None) -> int:
        """Delete requests that finished more than `retention` seconds ago"""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=self.retention)
        removed = 0
        for record in await self.store.list(APPROVALS):
            request = ApprovalRequest.model_validate(record)
            if not request.is_terminal or not request.completed_at:
                continue
            if datetime.fromisoformat(request.completed_at) < cutoff:
                await self.store.delete(APPROVALS, request.id)
                removed += 1
        if removed:
            log_event(logger, "Finished approvals pruned", removed=removed)
        return removed

    async def _on_terminal(self, request: ApprovalRequest) -> None:
        if self.resume_handler is None:
            return
        await self.resume_handler(request)

    # ------------------------------------------------------------- sweeper

    def start_sweeper(self, interval: float) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.expire_overdue()
                await self.prune_terminal()
            except Exception as e:
                log_event(logger, "Approval sweep failed", "ERROR",
                          error_kind="infrastructure", error=str(e))

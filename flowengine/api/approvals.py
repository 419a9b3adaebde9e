# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Approval API Routes

- GET  /approvals                   - pending requests
- GET  /approvals/{id}              - request details
- POST /approvals/{id}/decisions    - approve or reject
- POST /approvals/{id}/cancel       - cancel and discard the suspended run
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from flowengine.models import DecisionRequest
from flowengine.services.approval_service import ApprovalService

from .dependencies import get_approval_service

router = APIRouter(prefix="/approvals", tags=["approvals"])


class CancelRequest(BaseModel):
    reason: Optional[str] = None


@router.get("")
async def list_pending(
    organizationId: Optional[str] = None,
    service: ApprovalService = Depends(get_approval_service),
) -> List[Dict[str, Any]]:
    return [r.to_wire() for r in await service.list_pending(organizationId)]


@router.get("/{request_id}")
async def get_request(
    request_id: str,
    service: ApprovalService = Depends(get_approval_service),
) -> Dict[str, Any]:
    return (await service.get_request(request_id)).to_wire()


@router.post("/{request_id}/decisions")
async def submit_decision(
    request_id: str,
    decision: DecisionRequest,
    service: ApprovalService = Depends(get_approval_service),
) -> Dict[str, Any]:
    request = await service.submit_decision(
        request_id,
        user_id=decision.user_id,
        decision=decision.decision,
        comment=decision.comment,
        custom_fields=decision.custom_fields,
    )
    return request.to_wire()


@router.post("/{request_id}/cancel")
async def cancel_request(
    request_id: str,
    body: Optional[CancelRequest] = None,
    service: ApprovalService = Depends(get_approval_service),
) -> Dict[str, Any]:
    request = await service.cancel(request_id, reason=body.reason if body else None)
    return request.to_wire()

# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Webhook receiver.

POST /webhooks/{path} with header X-Signature-256: sha256=<hex>
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from flowengine.services.scheduler import TriggerScheduler

from .dependencies import get_scheduler

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{path:path}")
async def receive_webhook(
    path: str,
    request: Request,
    x_signature_256: Optional[str] = Header(default=None),
    scheduler: TriggerScheduler = Depends(get_scheduler),
):
    # Signature is computed over the raw bytes, so read the body before parsing
    body = await request.body()
    accepted = await scheduler.fire_webhook(path, body, x_signature_256)
    return JSONResponse(status_code=202, content=accepted)

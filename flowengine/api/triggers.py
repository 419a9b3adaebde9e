# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Trigger API Routes

- POST   /triggers                  - create or replace a trigger
- GET    /triggers/{id}             - trigger details with next run
- PATCH  /triggers/{id}/enabled     - enable or disable
- DELETE /triggers/{id}             - delete and deregister
- POST   /triggers/{id}/run         - fire now and wait for all attempts
- GET    /triggers/{id}/logs        - attempt history
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from flowengine.core.errors import NotFoundError
from flowengine.models import Trigger
from flowengine.services.scheduler import TriggerScheduler

from .dependencies import get_scheduler

router = APIRouter(prefix="/triggers", tags=["triggers"])


class ToggleRequest(BaseModel):
    enabled: bool


def _with_next_run(trigger: Trigger, scheduler: TriggerScheduler) -> Dict[str, Any]:
    payload = trigger.to_wire()
    payload.pop("webhookSecret", None)
    next_run = scheduler.get_next_run(trigger.id)
    payload["nextRun"] = next_run.isoformat() if next_run else None
    return payload


@router.get("")
async def list_jobs(scheduler: TriggerScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    return scheduler.get_status()


@router.post("")
async def save_trigger(trigger: Trigger, scheduler: TriggerScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    saved = await scheduler.save_trigger(trigger)
    return _with_next_run(saved, scheduler)


@router.get("/{trigger_id}")
async def get_trigger(trigger_id: str, scheduler: TriggerScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    return _with_next_run(await scheduler.get_trigger(trigger_id), scheduler)


@router.patch("/{trigger_id}/enabled")
async def toggle_trigger(
    trigger_id: str,
    body: ToggleRequest,
    scheduler: TriggerScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    await scheduler.toggle_job(trigger_id, body.enabled)
    return _with_next_run(await scheduler.get_trigger(trigger_id), scheduler)


@router.delete("/{trigger_id}")
async def delete_trigger(trigger_id: str, scheduler: TriggerScheduler = Depends(get_scheduler)) -> Dict[str, str]:
    if not await scheduler.delete_trigger(trigger_id):
        raise NotFoundError("Trigger", trigger_id)
    return {"status": "deleted", "triggerId": trigger_id}


@router.post("/{trigger_id}/run")
async def run_trigger(trigger_id: str, scheduler: TriggerScheduler = Depends(get_scheduler)) -> List[Dict[str, Any]]:
    await scheduler.get_trigger(trigger_id)
    return [log.to_wire() for log in await scheduler.trigger_now(trigger_id)]


@router.get("/{trigger_id}/logs")
async def get_logs(trigger_id: str, scheduler: TriggerScheduler = Depends(get_scheduler)) -> List[Dict[str, Any]]:
    return [log.to_wire() for log in await scheduler.get_logs(trigger_id)]

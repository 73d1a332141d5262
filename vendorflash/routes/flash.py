from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
import asyncio
import json
import logging
from sse_starlette.sse import EventSourceResponse

from ..utils.flash import (
    cancel_flash_job,
    get_flash_job,
    list_flash_jobs,
    serialize_job,
    start_flash_job,
)
from ..utils.flash_engine import FlashOrchestrator, FlashRequest
from ..utils.vendors import Vendor

router = APIRouter()
logger = logging.getLogger(__name__)

FINISHED_STATUSES = ("done", "failed", "cancelled")


class StartFlashRequest(BaseModel):
    vendor: Vendor
    packages: List[str] = Field(default_factory=list)
    images: Dict[str, str] = Field(default_factory=dict)
    preserve_user_data: bool = True
    critical_partitions: List[str] = Field(default_factory=list)
    critical_roles: Optional[List[str]] = None
    partitions: Optional[List[str]] = None
    device_port: Optional[str] = None
    loader: Optional[str] = None
    chipset: Optional[str] = None
    use_device_table: bool = False
    reboot: bool = True
    partition_timeout: Optional[int] = Field(default=None, gt=0)


def get_orchestrator_factory():
    """Factory used for new jobs. Overridden in tests."""
    return FlashOrchestrator


@router.post("/start")
async def start_flash(request: StartFlashRequest, orchestrator_factory=Depends(get_orchestrator_factory)):
    """Start a flashing session in the background"""
    scatter_fallback = request.vendor == Vendor.MEDIATEK and request.chipset
    if not request.packages and not request.images and not scatter_fallback:
        raise HTTPException(status_code=400, detail="Provide at least one firmware package or image")

    flash_request = FlashRequest(**request.model_dump())
    try:
        job_id = start_flash_job(flash_request, orchestrator_factory=orchestrator_factory)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {"job_id": job_id, "status": "started"}


@router.get("/jobs")
async def list_flash_jobs_endpoint():
    """List all flash jobs"""
    return {"jobs": [serialize_job(job) for job in list_flash_jobs()]}


@router.get("/jobs/{job_id}")
async def get_flash_job_endpoint(job_id: str):
    """Get flash job status, report and logs"""
    job = get_flash_job(job_id)

    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    return serialize_job(job, include_logs=True)


@router.get("/jobs/{job_id}/stream")
async def stream_flash_job(job_id: str):
    """Stream flash job logs and progress via SSE"""
    job = get_flash_job(job_id)

    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    async def event_generator():
        last_log_count = 0
        last_progress = None
        while True:
            job = get_flash_job(job_id)
            if not job:
                yield {"event": "error", "data": json.dumps({"message": "Job not found"})}
                break

            # Send new logs
            logs = job["logs"]
            if len(logs) > last_log_count:
                for log_line in logs[last_log_count:]:
                    yield {"event": "log", "data": json.dumps({"line": log_line})}
                last_log_count = len(logs)

            if job["progress"] and job["progress"] != last_progress:
                last_progress = job["progress"]
                yield {"event": "progress", "data": json.dumps(last_progress)}

            # Send final status
            if job["status"] in FINISHED_STATUSES:
                yield {"event": "status", "data": json.dumps({"status": job["status"], "report": job["report"]})}
                yield {"event": "close", "data": json.dumps({})}
                break

            yield {"event": "heartbeat", "data": json.dumps({})}
            await asyncio.sleep(0.5)

    return EventSourceResponse(event_generator())


@router.post("/jobs/{job_id}/cancel")
async def cancel_flash_job_endpoint(job_id: str):
    """Cancel a flash job"""
    success = cancel_flash_job(job_id)

    if not success:
        raise HTTPException(status_code=404, detail="Job not found or cannot be cancelled")

    return {"success": True, "message": "Cancellation requested"}

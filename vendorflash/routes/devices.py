from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
import logging

from ..utils.flash_engine import reboot_device
from ..utils.process import ProcessRunner
from ..utils.tools import ToolResolver
from ..utils.vendors import PROFILES, Operation, get_profile
from .partitions import DeviceRequest, device_operation, get_runner
from .tools import get_resolver

router = APIRouter()
logger = logging.getLogger(__name__)


class RebootRequest(DeviceRequest):
    mode: Optional[str] = None  # None or "normal" boots the system


@router.get("/reboot-modes")
async def list_reboot_modes():
    """Reboot targets each vendor tool accepts"""
    return {
        vendor.value: ["normal", *profile.reboot_modes]
        for vendor, profile in PROFILES.items()
        if profile.supports(Operation.REBOOT)
    }


@router.post("/reboot")
def reboot(
    request: RebootRequest,
    resolver: ToolResolver = Depends(get_resolver),
    runner: ProcessRunner = Depends(get_runner),
):
    """Reboot a connected device to the system or a vendor boot mode"""
    profile = get_profile(request.vendor)
    mode = (request.mode or "normal").lower()
    if mode != "normal" and mode not in profile.reboot_modes:
        supported = ", ".join(["normal", *profile.reboot_modes])
        raise HTTPException(
            status_code=422,
            detail=f"{profile.display_name} cannot reboot to {mode} (supported: {supported})",
        )

    with device_operation(request, Operation.REBOOT, resolver) as handle:
        reboot_device(
            request.vendor,
            handle,
            runner,
            mode=mode,
            port=request.port,
            loader=request.loader,
            timeout=request.timeout,
        )

    target = "system" if mode == "normal" else mode
    return {"success": True, "message": f"Device rebooting to {target}"}

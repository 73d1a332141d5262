from contextlib import contextmanager
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
import logging

from ..core.errors import (
    DeviceCommandFailed,
    PartitionTableEmpty,
    ProcessCancelled,
    ProcessTimedOut,
    ToolInstallFailed,
    ToolNotInstalled,
)
from ..utils.flash import release_transport, reserve_transport
from ..utils.flash_engine import backup_partition, erase_partition, read_partition_table
from ..utils.process import ProcessRunner
from ..utils.tools import ToolResolver
from ..utils.vendors import Operation, Vendor, get_profile, parse_partition_table
from .tools import get_resolver

router = APIRouter()
logger = logging.getLogger(__name__)


class ParseRequest(BaseModel):
    vendor: Vendor
    raw_text: str


class DeviceRequest(BaseModel):
    vendor: Vendor
    port: Optional[str] = None
    loader: Optional[str] = None
    timeout: Optional[int] = Field(default=None, gt=0)

    @property
    def transport_key(self) -> str:
        return self.port or f"{self.vendor.value}:default"


class ReadRequest(DeviceRequest):
    pass


class BackupRequest(DeviceRequest):
    partition: str = Field(min_length=1)
    output: str = Field(min_length=1)


class EraseRequest(DeviceRequest):
    partition: str = Field(min_length=1)


def get_runner() -> ProcessRunner:
    return ProcessRunner()


def _table_response(vendor: Vendor, table) -> dict:
    return {
        "vendor": vendor.value,
        "source": table.source,
        "count": len(table),
        "partitions": [entry.to_dict() for entry in table],
    }


@contextmanager
def device_operation(request: DeviceRequest, operation: Operation, resolver: ToolResolver):
    """
    Hold the request's transport for one tool call and map its errors to HTTP statuses.

    Yields the resolved tool handle.
    """
    profile = get_profile(request.vendor)
    if not profile.supports(operation):
        raise HTTPException(status_code=422, detail=f"{profile.display_name} does not support {operation.value}")

    try:
        reserve_transport(request.transport_key, operation.value)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    try:
        yield resolver.ensure(profile.tool)
    except (ToolNotInstalled, ToolInstallFailed) as e:
        raise HTTPException(status_code=424, detail=str(e))
    except ProcessTimedOut as e:
        raise HTTPException(status_code=504, detail=str(e))
    except ProcessCancelled as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DeviceCommandFailed as e:
        logger.error(f"{e}")
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        release_transport(request.transport_key)


@router.post("/parse")
async def parse_table(request: ParseRequest):
    """Parse captured partition-table text (PIT, GPT dump or scatter file)"""
    table = parse_partition_table(request.vendor, request.raw_text)
    try:
        table.raise_if_empty()
    except PartitionTableEmpty as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _table_response(request.vendor, table)


@router.post("/read")
def read_table(
    request: ReadRequest,
    resolver: ToolResolver = Depends(get_resolver),
    runner: ProcessRunner = Depends(get_runner),
):
    """Read the partition table from a connected device"""
    try:
        with device_operation(request, Operation.PRINT_TABLE, resolver) as handle:
            table = read_partition_table(
                request.vendor,
                handle,
                runner,
                port=request.port,
                loader=request.loader,
                timeout=request.timeout,
            ).raise_if_empty()
    except PartitionTableEmpty as e:
        logger.warning(f"Partition table read returned nothing: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    return _table_response(request.vendor, table)


@router.post("/backup")
def backup(
    request: BackupRequest,
    resolver: ToolResolver = Depends(get_resolver),
    runner: ProcessRunner = Depends(get_runner),
):
    """Read one partition from the device into a file on the host"""
    with device_operation(request, Operation.BACKUP, resolver) as handle:
        path = backup_partition(
            request.vendor,
            handle,
            runner,
            request.partition,
            request.output,
            port=request.port,
            loader=request.loader,
            timeout=request.timeout,
        )

    return {
        "success": True,
        "partition": request.partition,
        "output": str(path),
        "size_bytes": path.stat().st_size,
    }


@router.post("/erase")
def erase(
    request: EraseRequest,
    resolver: ToolResolver = Depends(get_resolver),
    runner: ProcessRunner = Depends(get_runner),
):
    """Erase one partition on the device"""
    with device_operation(request, Operation.ERASE, resolver) as handle:
        erase_partition(
            request.vendor,
            handle,
            runner,
            request.partition,
            port=request.port,
            loader=request.loader,
            timeout=request.timeout,
        )

    return {"success": True, "message": f"Erased {request.partition}"}

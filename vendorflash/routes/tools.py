from fastapi import APIRouter, Depends, HTTPException
from functools import lru_cache
import logging

from ..core.errors import ToolInstallFailed, ToolNotInstalled
from ..utils.tools import ToolKind, ToolResolver

router = APIRouter()
logger = logging.getLogger(__name__)


@lru_cache()
def get_resolver() -> ToolResolver:
    """Shared resolver for the service. Overridden in tests."""
    return ToolResolver()


@router.get("/")
def list_tools(resolver: ToolResolver = Depends(get_resolver)):
    """Installed state of every vendor tool"""
    return {"tools": resolver.status()}


@router.post("/{kind}/install")
def install_tool(kind: ToolKind, resolver: ToolResolver = Depends(get_resolver)):
    """Download and install a vendor tool (no-op if already installed)"""
    try:
        existing = resolver.resolve(kind)
        if existing:
            return {"success": True, "kind": kind.value, "path": existing.path, "installed": False}

        result = resolver.install(kind)
    except ToolInstallFailed as e:
        logger.error(f"Install of {kind.value} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    except ToolNotInstalled as e:
        raise HTTPException(status_code=424, detail=str(e))

    return {
        "success": True,
        "kind": kind.value,
        "path": result.handle.path,
        "installed": True,
        "source_url": result.source_url,
        "size_bytes": result.size_bytes,
    }

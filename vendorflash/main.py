"""FastAPI application for the multi-vendor flashing service"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from vendorflash.config import settings
from vendorflash.core.errors import VendorFlashError
from vendorflash.core.logging import setup_logging
from vendorflash.routes import devices, flash, partitions, tools

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION}...")

    for path in (settings.tools_path, settings.loaders_path, settings.scratch_path):
        path.mkdir(parents=True, exist_ok=True)
    logger.info(f"Tools: {settings.tools_path}, loaders: {settings.loaders_path}, scratch: {settings.scratch_path}")

    yield

    logger.info("Application shut down successfully")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Firmware flashing service for Samsung, Qualcomm and MediaTek devices",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
    lifespan=lifespan,
)

# Local service; the desktop front end runs on another origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(flash.router, prefix="/flash", tags=["flash"])
app.include_router(tools.router, prefix="/tools", tags=["tools"])
app.include_router(partitions.router, prefix="/partitions", tags=["partitions"])
app.include_router(devices.router, prefix="/devices", tags=["devices"])


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "vendorflash API",
        "version": settings.APP_VERSION,
        "status": "healthy",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "service": settings.APP_NAME,
    }


@app.exception_handler(VendorFlashError)
async def vendorflash_exception_handler(request, exc):
    logger.error(f"{type(exc).__name__}: {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc), "error": type(exc).__name__})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "message": str(exc) if settings.DEBUG else "An error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vendorflash.main:app",
        host=settings.PY_HOST,
        port=settings.PY_PORT,
        reload=settings.DEBUG,
        log_config=None,  # Use our custom logging
    )

"""
vSphere Instance Plugin - FastAPI Application Entry Point

Serves the instance lifecycle (validate, provision, label, destroy,
describe) over HTTP for the orchestrator.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from vsphere_instance import __version__
from vsphere_instance.config import settings
from vsphere_instance.errors import (
    ConfigurationError,
    DeviceAttachFailure,
    PluginError,
    ResourceNotFound,
    TaskFailure,
    VCenterConnectionError,
)
from vsphere_instance.routers import instance

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level_name(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ConfigurationError: 400,
    ResourceNotFound: 404,
    VCenterConnectionError: 502,
    TaskFailure: 500,
    DeviceAttachFailure: 500,
}


def status_for(error: PluginError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"vSphere instance plugin v{__version__} starting as {settings.plugin_name}...")
    yield
    logger.info("vSphere instance plugin shutting down...")


app = FastAPI(
    title="vSphere Instance Plugin API",
    description="VM lifecycle instance plugin for VMware vCenter / ESXi",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(PluginError)
async def plugin_error_handler(request: Request, exc: PluginError):
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.url.path} failed: {exc}")
    content = {"detail": exc.message, "error_code": exc.error_code}
    if isinstance(exc, ConfigurationError) and exc.violations:
        content["violations"] = exc.violations
    return JSONResponse(status_code=status, content=content)


app.include_router(instance.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.plugin_name,
        "version": __version__,
        "docs": "/docs",
        "info": "/v1/info"
    }


def run():
    """Run the application with uvicorn."""
    import uvicorn

    uvicorn.run(
        "vsphere_instance.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level_name().lower()
    )


if __name__ == "__main__":
    run()

"""FastAPI application for the fleet control plane."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fleet import __version__
from fleet.background import get_task_supervisor
from fleet.exceptions import FleetError
from fleet.routers import billing, clusters, monitor
from fleet.services.build_watcher import get_build_watcher
from fleet.settings import get_settings

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)

    watcher = get_build_watcher()
    if settings.watcher_enabled:
        watcher.start()

    yield

    await watcher.stop()
    await get_task_supervisor().drain()


app = FastAPI(
    title="Fleet Control Plane API",
    description="Provisions, scales, bills and monitors per-organization Kubernetes clusters",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %r", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.__class__.__name__, "details": exc.message},
    )


app.include_router(clusters.router)
app.include_router(billing.router)
app.include_router(monitor.router)


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

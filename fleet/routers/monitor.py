"""Build event monitor endpoints."""

from fastapi import APIRouter, Depends

from fleet.models import WatcherStatus
from fleet.services.build_watcher import BuildEventWatcher, get_build_watcher

router = APIRouter(prefix="/v1/monitor/build-events", tags=["Monitor"])


@router.get("", response_model=WatcherStatus)
async def get_watcher_status(
    watcher: BuildEventWatcher = Depends(get_build_watcher),
) -> WatcherStatus:
    return WatcherStatus(running=watcher.running)


@router.post("/start", response_model=WatcherStatus)
async def start_watcher(
    watcher: BuildEventWatcher = Depends(get_build_watcher),
) -> WatcherStatus:
    """Start watching build events (no-op if already running)."""
    watcher.start()
    return WatcherStatus(running=watcher.running)


@router.post("/stop", response_model=WatcherStatus)
async def stop_watcher(
    watcher: BuildEventWatcher = Depends(get_build_watcher),
) -> WatcherStatus:
    """Stop watching build events (no-op if not running)."""
    await watcher.stop()
    return WatcherStatus(running=watcher.running)

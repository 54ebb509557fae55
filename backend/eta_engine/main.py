"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from eta_engine.api import buses, diagnostics, fixes, routes, stops, ws
from eta_engine.config import settings
from eta_engine.core.broadcaster import Broadcaster
from eta_engine.core.bus_tracker import BusTracker
from eta_engine.core.directory_client import DirectoryClient
from eta_engine.core.scheduler import create_scheduler

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    # Initialize services
    directory = DirectoryClient()
    broadcaster = Broadcaster()
    await broadcaster.connect()

    tracker = BusTracker(directory, broadcaster)

    # Wire up API modules
    ws.broadcaster = broadcaster
    ws.tracker = tracker
    fixes.tracker = tracker
    buses.tracker = tracker
    stops.tracker = tracker
    routes.tracker = tracker
    diagnostics.tracker = tracker

    # Load configured routes up front; others are fetched on first fix
    await tracker.preload_routes(settings.preload_routes)

    # Start scheduler
    scheduler = create_scheduler(tracker)
    scheduler.start()
    logger.info(
        "ETA engine started - staleness sweep every %ds, %d routes preloaded",
        settings.staleness_interval_seconds, len(tracker.route_index.route_ids()),
    )

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await tracker.close()
    await directory.close()
    await broadcaster.close()
    logger.info("ETA engine shut down")


app = FastAPI(
    title="Bus Position & ETA Engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(fixes.router)
app.include_router(routes.router)
app.include_router(stops.router)
app.include_router(buses.router)
app.include_router(diagnostics.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}

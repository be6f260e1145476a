"""
MODULE OVERVIEW:
The FastAPI application factory for the scheduler's ops surface.

WHAT IS HAPPENING HERE:
The app never ticks by itself. An external trigger (cron, Cloud Scheduler)
POSTs `/tick` every few minutes; operators read `/stats` and `/status`.
We use a `lifespan` context manager: if no scheduler was handed to
`create_app`, one is built from settings on startup, and its mail transport
is closed on shutdown.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from notify_scheduler.scheduler import NotificationScheduler, from_settings
from notify_scheduler.server.middleware import TimingMiddleware
from notify_scheduler.server.routes import router


def create_app(scheduler: NotificationScheduler | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # STARTUP
        if getattr(app.state, "scheduler", None) is None:
            app.state.scheduler = from_settings()
        logger.info("Notification scheduler ops server starting up...")

        yield

        # SHUTDOWN
        close = getattr(app.state.scheduler.engine.transport, "close", None)
        if close is not None:
            close()
        logger.info("Shutdown complete.")

    app = FastAPI(
        title="Notification Delivery Scheduler",
        description="Ops surface for the notification queue: ticks, triggers and queue health",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.scheduler = scheduler

    app.add_middleware(TimingMiddleware)
    app.include_router(router, tags=["Scheduler"])

    @app.get("/healthz", tags=["Ops"])
    async def health_check():
        return {"status": "ok"}

    return app

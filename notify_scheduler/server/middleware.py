"""
MODULE OVERVIEW:
FastAPI middleware that times every ops request.

WHAT IS HAPPENING HERE:
We add an `X-Process-Time-Ms` header so whoever drives `/tick` from a cron
job can see how long a tick took server-side, and log slow ticks.
"""

import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from loguru import logger

SLOW_REQUEST_MS = 5000.0


class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time_ms:.2f}"

        if process_time_ms > SLOW_REQUEST_MS:
            logger.warning(f"{request.method} {request.url.path} slow request {process_time_ms:.2f}ms")
        elif request.url.path != "/healthz":
            logger.debug(f"{request.method} {request.url.path} completed in {process_time_ms:.2f}ms")

        return response

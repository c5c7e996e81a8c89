"""
FastAPI application factory.

* Registers routes for rides, drivers, admin and the ride stream.
* Owns one ``Dispatcher`` (``app.state.dispatcher``); the lifespan shuts
  its background tasks down on exit.
* Applies rate limiting and request logging.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ridehail.api.middleware import RequestLoggingMiddleware, limiter
from ridehail.api.routes import admin, drivers, rides, stream
from ridehail.workers.dispatcher import Dispatcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Shut the dispatcher down (trip tasks, offer generators) on exit."""
    logger.info(
        "Dispatcher ready with %d drivers", len(app.state.dispatcher.pool.all())
    )
    yield
    await app.state.dispatcher.shutdown()


def create_app(dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    app = FastAPI(
        title="Ride-Hailing Dispatch API",
        description=(
            "Matches ride requests to the nearest available driver, "
            "simulates the trip and streams driver positions.  Includes the "
            "driver-app endpoints for sign-in, offers and ride progress."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.dispatcher = dispatcher or Dispatcher()

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(RequestLoggingMiddleware)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(stream.router)

    return app

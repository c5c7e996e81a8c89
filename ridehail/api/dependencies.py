"""FastAPI dependency injection helpers."""

from fastapi import HTTPException, Request

from ridehail.workers.dispatcher import Dispatcher


def get_dispatcher(request: Request) -> Dispatcher:
    """The dispatcher the app was built with (``app.state.dispatcher``)."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Dispatcher not running")
    return dispatcher

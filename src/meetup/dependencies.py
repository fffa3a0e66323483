"""Shared FastAPI dependencies."""

from fastapi import Request

from meetup.container import Container


def get_container(request: Request) -> Container:
    """The process-wide service container built in the app lifespan."""
    container: Container | None = getattr(request.app.state, "container", None)
    if container is None:
        msg = "Service container not initialized"
        raise RuntimeError(msg)
    return container

"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
Everything is built once during the FastAPI lifespan (or passed to
create_app by tests) and stored on app.state.

Usage:
    from mailflow.web.dependencies import get_services

    @api_router.get("/health")
    async def health(services: Services = Depends(get_services)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from mailflow.services import Services


def get_services(request: Request) -> Services:
    """Get the shared Services container, or 503 if startup failed."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services are not initialized")
    return services

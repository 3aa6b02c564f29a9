"""
API Dependencies
"""

from fastapi import HTTPException, Request

from pricefeed.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the application's service container"""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services

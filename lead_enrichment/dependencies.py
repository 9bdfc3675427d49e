"""
FastAPI dependencies for the application.
"""

from fastapi import Header, HTTPException, Request, status

from .config import load_settings
from .errors import ConfigurationError
from .services import Services, build_services


def get_services(request: Request) -> Services:
    """Services built on first use and kept on app.state."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        try:
            services = build_services(load_settings())
        except ConfigurationError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
        request.app.state.services = services
    return services


async def get_organization_id(x_organization_id: str = Header(None)) -> str:
    """
    Organization the caller acts for.

    Raises 403 if X-Organization-Id header is missing.
    """
    if not x_organization_id or not x_organization_id.strip():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Organization required (X-Organization-Id header)",
        )
    return x_organization_id.strip()

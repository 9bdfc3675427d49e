"""
Lead Enrichment - FastAPI Application

Headless API that enriches captured LinkedIn profiles through external
providers and scores them against organization-defined qualifications.
The API only accepts and reports jobs; the queue worker does the rest.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import load_settings
from .dependencies import get_services
from .logging_setup import configure_logging
from .routers import enrichment, webhooks
from .services import Services
from .services.db.supabase_client import check_connection

SERVICE_NAME = "Lead Enrichment API"
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    services = getattr(app.state, "services", None)
    if services is not None:
        services.close()


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title=SERVICE_NAME,
        description="Enrich LinkedIn profiles and qualify them against organization criteria",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    # CORS middleware (adjust origins for production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": exc.errors()})

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": VERSION,
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check with database connection test."""
        try:
            services = get_services(request)
        except HTTPException:
            services = None
        db_ok = services is not None and check_connection(services.db)

        return {
            "status": "healthy" if db_ok else "degraded",
            "database": "connected" if db_ok else "disconnected",
        }

    app.include_router(enrichment.router, prefix="/enrichment", tags=["Enrichment"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

    return app


configure_logging(load_settings().log_level)

app = create_app()

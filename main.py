"""
Main FastAPI application entry point for Identity Reconciliation System
This file sets up the FastAPI application with configuration, middleware,
error mapping and the /identify endpoint. The reconciliation service is
built in the application lifespan, or injected by tests.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from config import settings
from schemas.identify import ErrorResponse, IdentifyRequest, IdentifyResponse
from services.exceptions import (
    ConflictError,
    IntegrityFault,
    InvalidObservation,
    StoreUnavailable,
)
from services.identity_service import IdentityService

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def build_identity_service():
    """
    Build the reconciliation service from configuration
    Returns the service and the database handle to dispose of (None for memory)
    """
    if settings.STORE_BACKEND == "memory":
        from services.memory_store import InMemoryContactStore

        logger.info("Using in-memory contact store")
        return IdentityService(InMemoryContactStore(settings.DB_LOCK_TIMEOUT_MS)), None

    from database import DatabaseManager
    from services.sql_store import SqlContactStore

    db_manager = DatabaseManager()
    if settings.DB_CREATE_TABLES:
        await db_manager.create_tables()
    return IdentityService(SqlContactStore(db_manager)), db_manager


def _error(status_code: int, error: str, message: str, details: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=message, details=details).model_dump()
    )


def create_app(identity_service: Optional[IdentityService] = None) -> FastAPI:
    """Create the FastAPI application, optionally around a prebuilt service"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_manager = None
        if identity_service is None:
            app.state.identity_service, db_manager = await build_identity_service()
        else:
            app.state.identity_service = identity_service
        try:
            yield
        finally:
            if db_manager is not None:
                await db_manager.dispose()

    app = FastAPI(
        title=settings.API_TITLE,
        description=settings.API_DESCRIPTION,
        version=settings.API_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(RequestValidationError)
    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc):
        """Handle request validation errors"""
        logger.warning(f"Validation error for {request.url}: {exc}")

        error_details = []
        for error in exc.errors():
            error_details.append({
                "field": " -> ".join(str(x) for x in error["loc"]),
                "message": error["msg"],
                "type": error["type"]
            })

        return _error(400, "ValidationError", "Request validation failed", {"errors": error_details})

    @app.exception_handler(InvalidObservation)
    async def invalid_observation_handler(request: Request, exc: InvalidObservation):
        logger.warning(f"Rejected observation for {request.url}: {exc}")
        return _error(400, "ValidationError", str(exc))

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        logger.warning(f"Conflict for {request.url}: {exc}")
        return _error(
            409,
            "ConflictError",
            "Concurrent update detected, retry the request",
            {"retryable": True}
        )

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error(f"Contact store unavailable for {request.url}: {exc}", exc_info=exc)
        return _error(
            503,
            "DatabaseConnectionError",
            "Database is currently unavailable. Please try again later."
        )

    @app.exception_handler(IntegrityFault)
    async def integrity_fault_handler(request: Request, exc: IntegrityFault):
        logger.error(f"Integrity fault for {request.url}: {exc}", exc_info=exc)
        return _error(500, "InternalServerError", "Unable to process identity reconciliation request")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected errors"""
        logger.error(f"Unexpected error for {request.url}: {exc}", exc_info=exc)
        return _error(500, "InternalServerError", "An unexpected error occurred")

    def get_identity_service(request: Request) -> IdentityService:
        return request.app.state.identity_service

    @app.get("/")
    async def root():
        """
        Root endpoint that returns basic API information
        """
        return {
            "message": "Identity Reconciliation API is running",
            "version": settings.API_VERSION,
            "environment": settings.ENVIRONMENT
        }

    @app.get("/health")
    async def health_check(service: IdentityService = Depends(get_identity_service)):
        """
        Health check endpoint for monitoring and load balancer health checks
        """
        store_ok = await service.store.ping()
        return JSONResponse(
            status_code=200 if store_ok else 503,
            content={
                "status": "healthy" if store_ok else "degraded",
                "environment": settings.ENVIRONMENT,
                "version": settings.API_VERSION,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "store": {
                    "backend": type(service.store).__name__,
                    "status": "connected" if store_ok else "disconnected"
                }
            }
        )

    @app.post("/identify", response_model=IdentifyResponse)
    async def identify_endpoint(
        request: IdentifyRequest,
        service: IdentityService = Depends(get_identity_service),
    ):
        """
        Main identity reconciliation endpoint

        Links customer identities based on email and/or phone number.
        Returns consolidated contact information including all linked emails,
        phone numbers, and secondary contact IDs.

        **Examples:**
        - New customer: creates a primary contact
        - Existing email + new phone: creates a secondary contact
        - Request joining two primaries: the older stays primary, the newer
          one and its secondaries are relinked to it
        """
        logger.info(f"Processing identify request: email={request.email}, phone={request.phoneNumber}")

        response = await service.identify_contact(request)

        logger.info(f"Successfully processed request. Primary contact ID: {response.contact.primaryContactId}")
        return response

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1
    )

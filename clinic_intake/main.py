"""
FastAPI application entrypoint.

Run locally:  uvicorn clinic_intake.main:app --reload
Run the follow-up workers:  celery -A clinic_intake.celery_app worker --beat
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clinic_intake.api.routes import router
from clinic_intake.config import settings
from clinic_intake.models.database import Base, engine
from clinic_intake.services.errors import (
    AuthorizationDenied,
    IntakeError,
    PersistenceFailure,
    ValidationFailed,
)

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Clinic Intake API",
    description=(
        "Patient intake for a clinic: anonymous consent submission, "
        "policy-gated staff access, consent PDF generation and staff "
        "notification with an audit trail."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.exception_handler(IntakeError)
def handle_intake_error(request: Request, exc: IntakeError) -> JSONResponse:
    if isinstance(exc, AuthorizationDenied):
        # same body whether or not the target exists
        return JSONResponse(status_code=403, content={"detail": exc.message})
    if isinstance(exc, ValidationFailed):
        return JSONResponse(
            status_code=422,
            content={"detail": exc.message, "error_code": exc.error_code, "errors": exc.errors},
        )
    if isinstance(exc, PersistenceFailure):
        return JSONResponse(
            status_code=503,
            content={"detail": exc.message, "error_code": exc.error_code, "retryable": True},
        )
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)

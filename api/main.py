"""
CareerVine - Personal CRM Calendar Service
FastAPI Application Entry Point

Run locally with:

    uvicorn api.main:app --reload --port 8000

Every /api route expects the caller's user id in the X-User-Id header, set
by the authenticating proxy in front of this service.
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from api.routes import calendar
from config.settings import settings

logger = logging.getLogger(__name__)


app = FastAPI(
    title="CareerVine",
    description="Personal CRM calendar service: cached Google Calendar, availability and event management",
    version="0.1.0",
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(calendar.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (convert bytes to string)
    sanitized_errors = []
    for error in errors:
        sanitized = dict(error)
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        if "ctx" in sanitized:
            sanitized["ctx"] = {k: str(v) for k, v in sanitized["ctx"].items()}
        sanitized_errors.append(sanitized)

    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.get("/health")
async def health_check():
    """Health check endpoint that verifies configuration."""
    checks = {
        "google_oauth_configured": settings.google_oauth_enabled,
    }

    all_healthy = all(checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "service": "careervine",
        "checks": checks,
    }


@app.get("/")
async def root():
    return {"message": "CareerVine API", "version": "0.1.0"}

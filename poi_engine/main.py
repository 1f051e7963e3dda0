"""POI Engine FastAPI Application.

Main entry point for the HTTP server. The lifespan builds one ``POIEngine``
from the environment, starts its queue and monitoring loops, and stops them
on shutdown.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from poi_engine.api import router
from poi_engine.engine import POIEngine
from poi_engine.errors import POIEngineError, SearchValidationError
from poi_engine.models import AppError, ErrorCode

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    engine = getattr(app.state, "engine", None) or POIEngine()
    app.state.engine = engine
    await engine.start()
    yield
    await engine.stop()


app = FastAPI(
    title="POI Engine API",
    description="Tile-cached point-of-interest search over OpenStreetMap",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:3001",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, code: ErrorCode, message: str, user_message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": AppError(code=code, message=message, user_message=user_message).model_dump(mode="json"),
        },
    )


# Global exception handlers
@app.exception_handler(SearchValidationError)
async def search_validation_handler(request: Request, exc: SearchValidationError):
    """Handle invalid search parameters."""
    return _error_response(422, exc.code, str(exc), exc.user_message)


@app.exception_handler(ValidationError)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: Exception):
    """Handle Pydantic and request validation errors."""
    return _error_response(
        422,
        ErrorCode.VALIDATION_ERROR,
        str(exc),
        "Invalid request format. Please check your input.",
    )


@app.exception_handler(POIEngineError)
async def engine_exception_handler(request: Request, exc: POIEngineError):
    """Handle engine errors that reach the HTTP layer (cache or upstream down)."""
    return _error_response(503, exc.code, str(exc), exc.user_message)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    return _error_response(
        500,
        ErrorCode.API_ERROR,
        str(exc),
        "Something went wrong. Please try again.",
    )


# Include API routes
app.include_router(router, prefix="/api")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

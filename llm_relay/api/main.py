"""FastAPI application setup."""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

from llm_relay import __version__
from llm_relay.api.exceptions import (
    DuplicateJobError,
    JobBusyError,
    JobNotCompletedError,
    JobNotFoundError,
    ValidationError,
)
from llm_relay.api.response import error_response
from llm_relay.api.routes import health, reconcile, requests
from llm_relay.db.mongo import close_database
from llm_relay.services.job_queue import get_job_queue
from llm_relay.services.job_store import get_job_store
from llm_relay.services.reconciler import ReconciliationLoop

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    await get_job_store().ensure_indexes()
    queue = get_job_queue()
    await queue.start()
    reconciliation = ReconciliationLoop()
    await reconciliation.start()
    yield
    # Shutdown
    await reconciliation.stop()
    await queue.stop()
    await close_database()


app = FastAPI(
    title="LLM Relay API",
    description="Asynchronous relay for long-running Messages API requests",
    version=__version__,
    lifespan=lifespan,
)


# Exception handlers
@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=error_response("VALIDATION_ERROR", exc.message),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle malformed request bodies."""
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return JSONResponse(
        status_code=400,
        content=error_response("VALIDATION_ERROR", "; ".join(problems) or "Invalid request"),
    )


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
    """Handle unknown job ids."""
    return JSONResponse(
        status_code=404,
        content=error_response("JOB_NOT_FOUND", str(exc)),
    )


@app.exception_handler(DuplicateJobError)
async def duplicate_job_handler(request: Request, exc: DuplicateJobError) -> JSONResponse:
    """Handle resubmission of an existing id."""
    return JSONResponse(
        status_code=409,
        content=error_response("DUPLICATE_JOB", str(exc)),
    )


@app.exception_handler(JobBusyError)
async def job_busy_handler(request: Request, exc: JobBusyError) -> JSONResponse:
    """Handle a trigger for a job another worker is processing."""
    return JSONResponse(
        status_code=409,
        content=error_response("JOB_BUSY", exc.message),
    )


@app.exception_handler(JobNotCompletedError)
async def job_not_completed_handler(request: Request, exc: JobNotCompletedError) -> JSONResponse:
    """Handle an acknowledgement for a job without a result."""
    return JSONResponse(
        status_code=409,
        content=error_response("JOB_NOT_COMPLETED", exc.message),
    )


@app.exception_handler(ServerSelectionTimeoutError)
async def mongo_timeout_handler(request: Request, exc: ServerSelectionTimeoutError) -> JSONResponse:
    """Handle MongoDB connection timeout."""
    return JSONResponse(
        status_code=503,
        content=error_response("DATABASE_UNAVAILABLE", "Database is not available. Please try again later."),
    )


@app.exception_handler(ConnectionFailure)
async def mongo_connection_handler(request: Request, exc: ConnectionFailure) -> JSONResponse:
    """Handle MongoDB connection failure."""
    return JSONResponse(
        status_code=503,
        content=error_response("DATABASE_UNAVAILABLE", "Database connection failed. Please try again later."),
    )


# Register routes
app.include_router(health.router)
app.include_router(requests.router, prefix="/api")
app.include_router(reconcile.router, prefix="/api")

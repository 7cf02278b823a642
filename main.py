from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

# Internal imports
from config import config  # initialize logging
from data.database import create_tables
from api.ab_test_routes import ab_test_router, page_router
from services.errors import ABTestError, AssignmentNotFound

import contextlib
import logging
import middleware

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handles startup and shutdown events for the application.
    Code before 'yield' runs on startup.
    Code after 'yield' runs on shutdown.
    """
    logger.info("Application starting up: Initializing database connection pool and schema...")
    create_tables()
    logger.info("Database tables initialized successfully.")

    yield

    logger.info("Application shutting down: Closing resources...")


# --- FastAPI App Initialization ---
app = FastAPI(
    lifespan=lifespan,
    title="Page Builder A/B Testing API",
    version="1.0.0",
    description="A/B testing for page variants: test lifecycle, sticky assignment, conversions, and results."
)

app.add_middleware(middleware.RequestIDMiddleware)

app.include_router(ab_test_router)
app.include_router(page_router)


@app.exception_handler(ABTestError)
async def ab_test_error_handler(request: Request, exc: ABTestError):
    """Maps domain errors to 400/404 responses."""
    level = logging.WARNING if isinstance(exc, AssignmentNotFound) else logging.INFO
    logger.log(level, "%s %s rejected with %s: %s", request.method, request.url.path, type(exc).__name__, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "message": exc.message},
    )


@app.get("/health")
def health_check():
    return JSONResponse(content={"status": "healthy"}, status_code=200)

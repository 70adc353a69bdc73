import os
import subprocess
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.knowledge.router import router as knowledge_router
from app.config.logger import app_logger, log_request_end, log_request_error, log_request_start
from app.config.settings import settings
from app.services.container import build_services
from app.utils.errors import PartialBatchFailure, ServiceError, new_request_id, sanitize_error
from app.utils.responses import PartialFailureResponse, error_response


_git_sha_cache: Optional[str] = None


def get_git_sha() -> str:
    """Get the current Git commit SHA (cached to avoid blocking)."""
    global _git_sha_cache
    if _git_sha_cache is not None:
        return _git_sha_cache

    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
            timeout=1.0
        )
        _git_sha_cache = result.stdout.strip()[:8]
        return _git_sha_cache
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        _git_sha_cache = "local-dev"
        return _git_sha_cache


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager for startup and shutdown events."""
    # Startup
    app_logger.info(f"{settings.APP_NAME} starting up")
    app_logger.info("Logging system active - logs will be saved to logs/ directory")

    services = build_services(settings)
    try:
        await services.init()
    except Exception as e:
        app_logger.error(f"Database initialization failed: {e}")
        await services.aclose()
        raise
    app.state.services = services

    app_logger.info("Application initialized successfully")

    yield

    # Shutdown
    app_logger.info(f"{settings.APP_NAME} shutting down")
    await services.aclose()
    app.state.services = None
    app_logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    servers=[
        {
            "url": "http://localhost:8000",
            "description": "Development server",
        },
    ],
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or new_request_id()


# Logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests with timing information using Loguru."""
    start_time = time.perf_counter()
    request_id = new_request_id()
    request.state.request_id = request_id

    log_request_start(request, request_id)

    try:
        response = await call_next(request)
    except Exception as e:
        log_request_error(request, request_id, e, time.perf_counter() - start_time)
        raise

    log_request_end(request, request_id, response.status_code, time.perf_counter() - start_time)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(PartialBatchFailure)
async def partial_batch_failure_handler(request: Request, exc: PartialBatchFailure):
    request_id = _request_id(request)
    app_logger.bind(request_id=request_id).warning(f"Partial batch failure: {exc.message}")
    body = PartialFailureResponse(
        message=exc.message,
        request_id=request_id,
        results=exc.results,
        failed_count=len(exc.failed),
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    payload = sanitize_error(exc, _request_id(request), context=f"{request.method} {request.url.path}")
    return JSONResponse(status_code=exc.status_code, content=error_response(**payload).model_dump(mode="json"))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    payload = sanitize_error(exc, _request_id(request), context=f"{request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=error_response(**payload).model_dump(mode="json"))


@app.get("/", tags=["health"])
async def root():
    """Root endpoint with basic API information."""
    app_logger.info("Root endpoint accessed")
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "status": "operational",
        "docs": "/docs",
        "redoc": "/redoc"
    }


@app.get("/status", tags=["health"])
async def status():
    """Status endpoint with build information for CI/CD monitoring."""
    app_logger.info("Status endpoint accessed")

    # Get build information from environment variables (CI-injected)
    build_number = os.getenv("BUILD_NUMBER", "local-dev")
    git_sha = os.getenv("GIT_SHA", os.getenv("GITHUB_SHA", get_git_sha()))
    environment = os.getenv("ENVIRONMENT", os.getenv("ENV", "development"))

    return {
        "status": "ok",
        "build": build_number,
        "sha": git_sha,
        "env": environment
    }


@app.get("/health/db", tags=["health"])
async def health_db(request: Request):
    """Database health endpoint: runs a trivial query through the pool."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "unavailable", "message": "Services not initialized"}
        )
    is_ok, message = await services.database.ping()
    if not is_ok:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "unavailable", "message": message}
        )
    return {"status": "ok", "db": "available", "dialect": services.database.dialect, "message": message}


# Include API routers
app.include_router(knowledge_router)


if __name__ == "__main__":
    import uvicorn

    app_logger.info(f"Starting {settings.APP_NAME} server")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_config=None  # Use our custom logger
    )

"""
HubOps API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from core.errors import EngineError

settings = get_settings()
logger = structlog.get_logger()

ERROR_STATUS = {
    "OVERLAPPING_POLICY": 409,
    "CAPACITY_EXCEEDED": 409,
    "CAPACITY_CONFLICT": 409,
    "INVALID_STATE_TRANSITION": 409,
    "INVALID_SCHEDULE_DATE": 422,
    "INVALID_PAYLOAD": 422,
    "INVALID_BLACKOUT_RULE": 422,
    "UNKNOWN_SCOPE": 404,
    "RESERVATION_NOT_FOUND": 404,
    "STORAGE_ERROR": 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("HubOps API starting up", version=settings.app_version, env=settings.app_env)
    yield
    logger.info("HubOps API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Versioned SLA, risk and hub capacity policies with capacity reservations",
    lifespan=lifespan,
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status_code = ERROR_STATUS.get(exc.code, 400)
    log = logger.error if status_code >= 500 else logger.info
    log("api.engine_error", code=exc.code, path=request.url.path, message=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import capacity, integrity, policies

app.include_router(policies.router)
app.include_router(capacity.router)
app.include_router(integrity.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}

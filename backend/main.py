import traceback
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from api import proposals_router, workers_router
from models.database import AsyncSessionLocal, init_database
from services.ai_config import AIConfigService
from services.broker import QUEUES, MessageBroker
from services.rate_limiter import AdmissionController
from utils.logger import get_logger, setup_logging
from utils.utcnow import utcnow

setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@dataclass
class ControlPlane:
    """Shared handles the submission routes need; built once per process."""

    session_factory: object
    broker: MessageBroker
    ai_config: AIConfigService
    admission: AdmissionController


def build_control_plane(session_factory=None, broker: MessageBroker | None = None) -> ControlPlane:
    session_factory = session_factory or AsyncSessionLocal
    ai_config = AIConfigService(session_factory)
    return ControlPlane(
        session_factory=session_factory,
        broker=broker
        or MessageBroker(
            settings.REDIS_URL,
            consumer_name="api",
            broadcast_max_length=settings.BROKER_BROADCAST_MAX_LENGTH,
        ),
        ai_config=ai_config,
        admission=AdmissionController(session_factory, ai_config),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting control plane...")
    await init_database()
    logger.info("Database initialized")

    pipeline = getattr(app.state, "pipeline", None) or build_control_plane()
    await pipeline.broker.connect()
    await pipeline.broker.declare_topology([name for name, spec in QUEUES.items() if not spec.broadcast])
    app.state.pipeline = pipeline
    logger.info("Broker ready")

    try:
        yield
    finally:
        logger.info("Shutting down...")
        await pipeline.broker.close()
        logger.info("Shutdown complete")


app = FastAPI(
    title="PredictX Pipeline",
    description="Control plane for the news-to-market pipeline: proposals, disputes and worker control",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": str(exc)})


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After"],
)

# API routes
app.include_router(proposals_router, prefix="/api", tags=["Proposals"])
app.include_router(workers_router, prefix="/api", tags=["Workers"])


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    return {"status": "alive", "timestamp": utcnow().isoformat()}


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 8000)), timeout_keep_alive=30)

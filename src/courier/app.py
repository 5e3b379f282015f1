"""
Courier Application

FastAPI application for the Courier notification delivery engine.
"""
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Config
from .errors import (
    BrokerUnavailable,
    CourierError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from .services.engine_service import get_engine_service, init_engine_service
from .routes import (
    health_router,
    notifications_router,
    batches_router,
    queue_router,
    analytics_router,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("courier.app")

# Suppress noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("asyncpg").setLevel(logging.WARNING)
logging.getLogger("arq").setLevel(logging.WARNING)

# Create FastAPI application
app = FastAPI(
    title="Courier API",
    description="Multi-channel notification delivery engine",
    version="0.1.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidTransition, 409),
    (BrokerUnavailable, 503),
]


def status_for(exc: CourierError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(CourierError)
async def courier_error_handler(request: Request, exc: CourierError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    logger.info("Starting Courier...")

    try:
        await init_engine_service()
        logger.info("Courier started successfully")
    except Exception as e:
        logger.error(f"Failed to start Courier: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("Shutting down Courier...")

    try:
        engine = get_engine_service()
        await engine.close()
        logger.info("Courier shutdown complete")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Include routers
app.include_router(health_router, prefix="/api/v1")
app.include_router(notifications_router, prefix="/api/v1")
app.include_router(batches_router, prefix="/api/v1")
app.include_router(queue_router, prefix="/api/v1")
app.include_router(analytics_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Courier",
        "version": "0.1.0",
        "status": "running",
        "broker": Config.QUEUE_BROKER,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=Config.API_HOST,
        port=Config.API_PORT
    )

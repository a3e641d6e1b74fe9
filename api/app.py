"""
FastAPI Application Entry Point

This module creates and configures the FastAPI application for the
Passenger Face Gate service.

The application provides:
- WebSocket endpoint for real-time enrollment
- WebSocket endpoint for verification
- REST endpoints for passenger management
- Health check endpoint

Usage:
    # From project root:
    uvicorn api.app:app --host 0.0.0.0 --port 8000 --reload

    # Or run directly:
    python -m api.app
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import enrollment_router, management_router, verification_router
from api.schemas import HealthResponse
from facegate.config import get_logging_config, get_server_config
from facegate.gate import get_embedder
from facegate.reference_store import get_reference_store


# Configure logging
logging.basicConfig(
    level=get_logging_config().get("level", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs on startup:
    - Initialize reference store
    - Create the face embedder (the model itself loads on first detection)

    Runs on shutdown:
    - Close the reference store
    """
    logger.info("=" * 60)
    logger.info("Starting Passenger Face Gate API")
    logger.info("=" * 60)

    logger.info("Initializing reference store...")
    store = get_reference_store()
    stats = store.get_stats()
    logger.info(f"Reference store ready: {stats['total_passengers']} passengers enrolled")

    try:
        embedder = get_embedder()
        logger.info(f"Face embedder ready: {type(embedder).__name__}")
    except ImportError as e:
        logger.warning(f"No face embedding backend available, sessions will fail: {e}")

    logger.info("API startup complete!")
    logger.info("=" * 60)

    yield

    # Cleanup on shutdown
    logger.info("Shutting down API...")
    store.close()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Passenger Face Gate API",
    description="""
Face enrollment and verification for the booking flow.

## Features
- **Enrollment**: Capture face samples over a WebSocket and store them for a passenger
- **Verification**: Confirm that the person at the gate matches the enrollment
- **Passenger Management**: List, view, and delete enrollments; verification history

## WebSocket Sessions
Connect to `/ws/enroll/{passenger_id}` or `/ws/verify/{passenger_id}`.
Send frames as JSON: `{"type": "frame", "data": "<base64 JPEG>"}`
    """,
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(enrollment_router)
app.include_router(verification_router)
app.include_router(management_router)


# ============================================================
# Health Check Endpoint
# ============================================================

@app.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check():
    """
    Check the health of the API and its dependencies.

    Returns status of:
    - Face embedding backend (available/loaded)
    - Number of enrolled passengers and logged verifications
    """
    store = get_reference_store()
    stats = store.get_stats()

    backend = None
    loaded = False
    try:
        embedder = get_embedder()
        backend = getattr(embedder, "backend", type(embedder).__name__)
        loaded = getattr(embedder, "is_loaded", True)
    except ImportError as e:
        logger.warning(f"Health check: no embedding backend ({e})")

    return HealthResponse(
        status="healthy" if backend is not None else "degraded",
        embedder_backend=backend,
        embedder_loaded=loaded,
        enrolled_passengers=stats["total_passengers"],
        total_verifications=stats["total_verifications"],
    )


@app.get("/", tags=["system"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Passenger Face Gate API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    server_config = get_server_config()

    logger.info(f"Starting server on {server_config['host']}:{server_config['port']}")
    uvicorn.run(
        "api.app:app",
        host=server_config["host"],
        port=server_config["port"],
        reload=True,
        log_level="info",
    )

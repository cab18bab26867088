"""Main FastAPI application for Setting Forge."""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from setting_forge.config import settings
from setting_forge.db import init_db
from setting_forge.api import router
from setting_forge.services.generation_service import generation_service


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger.info("Starting Setting Forge backend...")
    init_db()
    generation_service.router.load_defaults()
    generation_service.store.start_sweeper(settings.session_sweep_interval_seconds)
    logger.info("All systems ready")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await generation_service.store.stop_sweeper()
    await generation_service.shutdown()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Setting Forge",
    description="Streaming prompt-to-tree world setting generation for serialized fiction",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Setting Forge",
        "version": "0.1.0",
        "status": "running",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "setting_forge.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )

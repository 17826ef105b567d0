"""FastAPI application entry point."""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gapminer.routes import runs

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="GapMiner",
    description="Iterative multi-agent research gap discovery",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(runs.router)


@app.on_event("startup")
async def startup_event():
    """Apply database migrations when the app starts."""
    logger.info("Starting application...")

    try:
        logger.info("Running database migrations...")
        from alembic import command
        from alembic.config import Config

        alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
        command.upgrade(alembic_cfg, "head")
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Startup migration error: {e}")
        logger.info("Continuing startup - assuming database is ready")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the job scheduler when the app shuts down."""
    logger.info("Shutting down application...")
    runs.shutdown_orchestrator()


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "GapMiner",
        "version": "0.1.0",
        "status": "running",
    }

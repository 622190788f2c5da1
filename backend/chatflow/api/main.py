"""
FastAPI application
"""
import logging
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..core.config import settings
from ..services.runtime import FlowRuntime, create_flow_runtime
from .routes import flows_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[FlowRuntime] = None) -> FastAPI:
    """Create and configure FastAPI application"""

    app = FastAPI(
        title=settings.APP_NAME,
        description="Chatflow - Interactive conversational flow engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.state.runtime = runtime or create_flow_runtime()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify allowed origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(flows_router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "name": settings.APP_NAME,
            "version": "1.0.0",
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        scheduler = app.state.runtime.scheduler
        return {
            "status": "ok",
            "scheduler": scheduler.get_stats() if scheduler else None
        }

    @app.on_event("startup")
    async def startup():
        """Startup event"""
        logger.info(f"Starting {settings.APP_NAME}...")

        # Start the continuation scheduler with delays left by a previous run
        scheduler = app.state.runtime.scheduler
        if scheduler:
            await app.state.runtime.restore_continuations()
            await scheduler.start_scheduler()

    @app.on_event("shutdown")
    async def shutdown():
        """Shutdown event"""
        logger.info(f"Shutting down {settings.APP_NAME}...")

        scheduler = app.state.runtime.scheduler
        if scheduler:
            await scheduler.stop_scheduler()

    return app


# Create app instance
app = create_app()

"""Rankscope API - keyword discovery jobs over HTTP.

Submits analysis jobs, serves their progress (poll or Server-Sent Events)
and their results. Jobs run on background threads inside this process.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rankscope import __version__, config
from rankscope.api.routes import analysis
from rankscope.collaborators.factory import build_collaborators
from rankscope.config import PipelineConfig
from rankscope.executor.job_store import create_job_store
from rankscope.executor.orchestrator import Orchestrator
from rankscope.executor.service import AnalysisService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_service() -> AnalysisService:
    """Wire store, collaborators and orchestrator from the environment."""
    pipeline = PipelineConfig.from_env()
    store = create_job_store(config.DATABASE_URL, config.SQLITE_PATH)
    orchestrator = Orchestrator(
        store,
        build_collaborators(timeout=pipeline.collaborator_timeout),
        pipeline,
        max_concurrent_jobs=config.MAX_CONCURRENT_JOBS,
    )
    return AnalysisService(store, orchestrator, pipeline)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    if app.state.service is None:
        logger.info("Initializing job store...")
        app.state.service = build_service()
        logger.info(f"Job store ready: {app.state.service.store.backend_name}")

        # Threads from a previous process are gone; fail their jobs
        recovered = app.state.service.store.recover_orphaned_jobs()
        if recovered:
            logger.warning(f"Marked {recovered} orphaned job(s) as failed")
    yield
    logger.info("Shutting down")


def create_app(service: Optional[AnalysisService] = None) -> FastAPI:
    """Build the FastAPI app; pass a service to skip environment wiring (tests)."""
    app = FastAPI(
        title="Rankscope API",
        description="Website keyword discovery: scraping, AI keyword analysis, "
        "search volume estimates and rank verification as background jobs.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(analysis.router, prefix="/v1")

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": "Rankscope API",
            "version": __version__,
            "docs": "/docs",
            "endpoints": {
                "analysis_jobs": "/v1/analysis/jobs",
                "analysis_stats": "/v1/analysis/stats",
            },
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        current = app.state.service
        return {
            "status": "healthy" if current is not None else "starting",
            "version": __version__,
            "store": current.store.backend_name if current is not None else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "rankscope.api.main:app",
        host="0.0.0.0",
        port=8001,
    )

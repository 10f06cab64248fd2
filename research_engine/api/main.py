"""Research Engine API.

This API exposes the research orchestration engine for polling clients:
- Start runs per provider lane
- Tick runs / advance whole sessions
- Poll run and session snapshots
- Retry failed lanes
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from research_engine import __version__
from research_engine.api.routes import research
from research_engine.executor.db import _is_postgres, init_db

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Initializing research database...")
    init_db()
    logger.info("Research Engine API ready")
    yield
    logger.info("Shutting down Research Engine API")


# Create FastAPI app
app = FastAPI(
    title="Research Engine API",
    description="""
## Research Pipeline Orchestration

Drives an 8-stage, evidence-gathering research pipeline against independent
LLM providers. Execution is poll-driven: each tick performs at most one step.

### Key Endpoints

- `POST /v1/research/runs` - Start a run for one provider lane
- `POST /v1/research/runs/{run_id}/tick` - Advance a run by one step
- `GET /v1/research/sessions/{session_id}` - Poll a session (throttled advance)
""",
    version=__version__,
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

# Include routers with /v1 prefix
app.include_router(research.router, prefix="/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Research Engine API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "runs": "/v1/research/runs",
            "sessions": "/v1/research/sessions/{session_id}",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "database": "postgres" if _is_postgres() else "sqlite",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "research_engine.api.main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
    )

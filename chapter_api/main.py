"""
Chapter Meetings API - Main Application Entry Point

FastAPI application running live chapter meetings.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from chapter_api import __version__
from chapter_api.core.config import settings
from chapter_api.core.database import init_db
from chapter_api.core.logging import configure_logging
from chapter_api.meetings.events import close_emitter, get_emitter
from chapter_api.meetings.router import router as meetings_router
from chapter_api.metrics import metrics


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    configure_logging()
    await init_db()
    await get_emitter()
    yield
    # Shutdown
    await close_emitter()


app = FastAPI(
    title=settings.app_name,
    description="Live meeting runner for chapter meetings",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health Check
@app.get("/health", tags=["system"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


@app.get("/metrics", tags=["system"])
async def prometheus_metrics() -> Response:
    """Prometheus scrape endpoint."""
    payload, content_type = metrics.render()
    return Response(content=payload, media_type=content_type)


# Include Routers
app.include_router(meetings_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chapter_api.main:app", host="0.0.0.0", port=8000, reload=True)

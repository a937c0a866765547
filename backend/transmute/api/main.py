"""
Transmute - FastAPI Application
===============================

Application factory with routers, middleware and pipeline wiring.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Sequence

import structlog
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from transmute.api import projects
from transmute.core.config import Settings, settings
from transmute.core.database import close_db, create_session_factory, engine, get_db, init_db
from transmute.core.logging_config import configure_logging
from transmute.core.pipeline import PipelineOrchestrator
from transmute.core.pipeline.errors import (
    CheckpointCorruption,
    InvalidTransition,
    ProjectNotFound,
    TransmuteError,
)
from transmute.core.pipeline.interfaces import (
    AnalysisStage,
    CodeGenService,
    PlanningService,
    SandboxExecutor,
    SliceCompleteHook,
)
from transmute.core.schemas import ErrorResponse, HealthResponse

configure_logging(settings)
logger = structlog.get_logger()


# ==========================================================================
# App Factory
# ==========================================================================

def create_app(
    bind: Optional[AsyncEngine] = None,
    stages: Sequence[AnalysisStage] = (),
    planner: Optional[PlanningService] = None,
    codegen: Optional[CodeGenService] = None,
    sandbox: Optional[SandboxExecutor] = None,
    on_slice_complete: Optional[SliceCompleteHook] = None,
    config: Optional[Settings] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Collaborators left out fall back to the local planner and the
    scripted build strategy.

    Args:
        bind: Database engine, the configured one by default
        stages: Analysis stages run for every project
        planner: Slice planning service
        codegen: Code generation service
        sandbox: Sandbox executor
        on_slice_complete: Hook called when a slice completes
        config: Application and pipeline settings, the environment by default

    Returns:
        Configured FastAPI application
    """
    cfg = config or settings
    db_engine = bind or engine

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan handler.

        Startup:
        - Create tables if missing

        Shutdown:
        - Close database connections
        """
        logger.info("Starting Transmute", version=cfg.APP_VERSION)

        await init_db(db_engine)
        logger.info("Database initialized")

        yield

        logger.info("Shutting down Transmute")
        if bind is None:
            await close_db()
        logger.info("Database connections closed")

    app = FastAPI(
        title=cfg.APP_NAME,
        version=cfg.APP_VERSION,
        description="Transmute - legacy application migration pipeline",
        docs_url="/docs" if cfg.is_development else None,
        redoc_url="/redoc" if cfg.is_development else None,
        openapi_url="/openapi.json" if cfg.is_development else None,
        lifespan=lifespan,
    )

    app.state.orchestrator = PipelineOrchestrator(
        create_session_factory(db_engine),
        stages=stages,
        planner=planner,
        codegen=codegen,
        sandbox=sandbox,
        on_slice_complete=on_slice_complete,
        config=cfg,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    def error_response(status_code: int, error: str, detail: str, code: str) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=error, detail=detail, code=code).model_dump(),
        )

    def pipeline_error(status_code: int, error: str, exc: TransmuteError) -> JSONResponse:
        return error_response(status_code, error, str(exc), exc.category.upper())

    @app.exception_handler(ProjectNotFound)
    async def not_found_handler(request: Request, exc: ProjectNotFound) -> JSONResponse:
        return pipeline_error(status.HTTP_404_NOT_FOUND, "Not Found", exc)

    @app.exception_handler(CheckpointCorruption)
    async def corruption_handler(request: Request, exc: CheckpointCorruption) -> JSONResponse:
        logger.error("Checkpoint corruption", path=request.url.path, detail=str(exc))
        return pipeline_error(status.HTTP_409_CONFLICT, "Checkpoint Corrupted", exc)

    @app.exception_handler(InvalidTransition)
    async def transition_handler(request: Request, exc: InvalidTransition) -> JSONResponse:
        return pipeline_error(status.HTTP_409_CONFLICT, "Conflict", exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        """Anything else is a 500; details only leak in development."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )
        detail = str(exc) if cfg.is_development else "An unexpected error occurred"
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error", detail, "INTERNAL_ERROR"
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
        """Check application and database health."""
        try:
            await db.execute(text("SELECT 1"))
            database = "connected"
        except SQLAlchemyError as e:
            logger.warning("Database health check failed", error=str(e))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=cfg.APP_VERSION,
            environment=cfg.ENVIRONMENT,
            database=database,
        )

    app.include_router(projects.router, prefix=cfg.API_V1_PREFIX)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": cfg.APP_NAME,
            "version": cfg.APP_VERSION,
            "docs": "/docs" if cfg.is_development else "Disabled in production",
            "health": "/health",
            "api": cfg.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "transmute.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )

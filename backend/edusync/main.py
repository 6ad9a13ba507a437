"""
FastAPI application entry point for the EduSync voice backend.

Run with:
    uvicorn edusync.main:app --app-dir backend
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from edusync.api import chat, pipelines
from edusync.api.registry import PipelineRegistry
from edusync.config import settings
from edusync.errors import (
    EduSyncError,
    PipelineNotFoundError,
    PipelineStageError,
    PipelineStateError,
    RAGError,
    SessionNotFoundError,
    TurnCancelledError,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
ERROR_STATUS_CODES = (
    (PipelineNotFoundError, 404),
    (SessionNotFoundError, 404),
    (TurnCancelledError, 409),
    (PipelineStateError, 409),
    (PipelineStageError, 502),
    (RAGError, 502),
)


def status_code_for(exc: EduSyncError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def _sweep_periodically(registry: PipelineRegistry, interval_seconds: int) -> None:
    """Close idle voice sessions and expired conversation contexts."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await registry.sweep()
        except Exception as e:
            logger.error(f"Error during session sweep: {e}", exc_info=True)


def create_app(registry: Optional[PipelineRegistry] = None) -> FastAPI:
    """
    Build the application.

    Args:
        registry: Prebuilt registry (tests); built from settings when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active_registry = registry
        if active_registry is None:
            from edusync.factory import build_registry
            active_registry = build_registry()

        app.state.registry = active_registry
        app.state.engine = active_registry.engine
        app.state.context_store = active_registry.context_store

        sweeper = asyncio.create_task(
            _sweep_periodically(active_registry, settings.cleanup_interval_seconds)
        )
        logger.info(f"🚀 EduSync voice backend started ({settings.environment})")

        yield

        logger.info("Shutting down EduSync voice backend")
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass

        await active_registry.close_all()
        llm = getattr(active_registry.engine, "llm", None)
        if llm is not None and hasattr(llm, "close"):
            await llm.close()

    app = FastAPI(
        title="EduSync Voice Backend",
        description="Sunita, the pedagogical voice assistant: STT → retrieval-confidence RAG → TTS",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EduSyncError)
    async def edusync_error_handler(request: Request, exc: EduSyncError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"error": "ValueError", "message": str(exc), "code": "INVALID_REQUEST"},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = [error.get("msg", "Invalid request") for error in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"error": "ValidationError", "message": "; ".join(messages), "code": "INVALID_REQUEST"},
        )

    app.include_router(chat.router)
    app.include_router(pipelines.router)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "edusync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )

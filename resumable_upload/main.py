"""
Main FastAPI application entry point
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import router
from .core.config import settings
from .core.exceptions import (
    AssemblyError,
    ChecksumMismatch,
    ChunkBudgetExhausted,
    FileIntegrityError,
    InvalidChunk,
    InvalidSessionState,
    SessionExpired,
    SessionNotFound,
    SessionNotResumable,
    TransientTransportError,
    UploadError,
)
from .services import SessionSweeper, UploadSessionManager, build_upload_manager

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Most specific classes first
ERROR_STATUS = [
    (SessionNotResumable, 409),
    (SessionNotFound, 404),
    (SessionExpired, 410),
    (ChecksumMismatch, 422),
    (InvalidChunk, 400),
    (InvalidSessionState, 409),
    (ChunkBudgetExhausted, 409),
    (TransientTransportError, 503),
    (FileIntegrityError, 422),
    (AssemblyError, 500),
]


def status_for(error: UploadError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
    else:
        logger.warning(f"⚠️ {request.method} {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(manager: Optional[UploadSessionManager] = None, start_sweeper: bool = True) -> FastAPI:
    """Build the app; a prebuilt manager replaces the one wired from settings"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown"""
        logger.info("🚀 Starting Upload Server...")
        app.state.manager = manager or build_upload_manager(settings)

        resumable = app.state.manager.detect_resumable_sessions()
        if resumable:
            logger.info(f"🔁 {len(resumable)} incomplete session(s) found on start-up")

        sweeper = SessionSweeper(app.state.manager, interval=settings.SWEEP_INTERVAL_SECONDS)
        if start_sweeper:
            sweeper.start()

        logger.info(f"🌐 Server ready at http://{settings.SERVER_HOST}:{settings.SERVER_PORT}")
        logger.info(f"📖 API docs at http://{settings.SERVER_HOST}:{settings.SERVER_PORT}/docs")

        yield

        logger.info("🛑 Shutting down Upload Server...")
        sweeper.stop()
        app.state.manager.store.close()

    app = FastAPI(
        title=settings.APP_TITLE,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(UploadError, upload_error_handler)
    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "service": settings.APP_TITLE,
            "version": settings.APP_VERSION,
            "status": "running",
            "docs": "/docs",
            "health": "/health"
        }

    @app.get("/health")
    def health(request: Request):
        """Health check endpoint"""
        manager = request.app.state.manager
        return {
            "status": "healthy",
            "storage": type(manager.object_store).__name__,
            "session_tiers": [backend.name for backend in manager.store.backends],
            "sessions": len(manager.list_sessions()),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )

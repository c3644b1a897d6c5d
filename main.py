import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings, validate_startup
from errors.handlers import register_exception_handlers
from flow.engine import ConversationFlowEngine
from session.manager import ConversationManager
from session.memory_store import InMemoryConversationStore
from session.redis_store import RedisConversationStore
from session.store import ConversationStore
from session_endpoints import router as session_router
from telemetry.service import TelemetryService, initialize_telemetry

logger = logging.getLogger(__name__)

SERVICE_NAME = "Course Copilot Conversation API"
SERVICE_VERSION = "1.0.0"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"


def build_store(settings: Settings) -> ConversationStore:
    """Create the session store selected by ``session_store_type``."""
    if settings.session_store_type == "redis":
        return RedisConversationStore(settings.redis_url or DEFAULT_REDIS_URL)
    return InMemoryConversationStore()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ConversationStore] = None,
    telemetry: Optional[TelemetryService] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings; loaded from the environment if omitted
        store: Session store; chosen from settings if omitted
        telemetry: Telemetry service; initialized from settings if omitted

    Returns:
        The configured application
    """
    settings = settings or get_settings()
    validate_startup(settings)
    telemetry = telemetry or initialize_telemetry(settings)
    store = store or build_store(settings)

    manager = ConversationManager(store, settings=settings, telemetry=telemetry)
    engine = ConversationFlowEngine(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        logger.info("Starting conversation API", extra={"extra_data": {
            "environment": settings.environment.value,
            "session_store": settings.session_store_type,
        }})
        await store.connect()

        cleanup_task = None
        if settings.cleanup_interval_seconds > 0:
            cleanup_task = asyncio.create_task(manager.run_cleanup_loop())

        yield  # Application runs here

        if cleanup_task is not None:
            cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup_task
        await store.disconnect()
        logger.info("Conversation API stopped")

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.manager = manager
    app.state.engine = engine

    # Register exception handlers for structured error responses
    register_exception_handlers(app)
    app.include_router(session_router)

    @app.get("/health")
    async def health():
        """
        Health check endpoint.

        Returns 200 when the session store answers, 503 otherwise.
        """
        store_healthy = await store.health_check()
        body = {
            "status": "healthy" if store_healthy else "unhealthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dependencies": {"session_store": store_healthy},
            "active_sessions": len(manager.active_session_ids()),
        }
        if not store_healthy:
            return JSONResponse(status_code=503, content=body)
        return body

    return app


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=port, log_level="info")

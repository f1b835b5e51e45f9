"""ChatItNow Backend Application.

This is the main entry point for the ChatItNow backend service, an
anonymous 1:1 chat matching server.

Modules:
    - chat: WebSocket matchmaking, rooms, reconnect grace periods
    - config: YAML + environment configuration
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from chatitnow.chat.engine import MatchingEngine
from chatitnow.chat.lifecycle import LifecycleSupervisor
from chatitnow.chat.router import router as chat_router
from chatitnow.config import AppConfig, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppConfig = app.state.config

    configured_level = getattr(logging, config.server.log_level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.server.log_level.upper())

    supervisor: LifecycleSupervisor = app.state.supervisor
    supervisor.start()
    logger.info(
        f"ChatItNow ready on {config.server.host}:{config.server.port} "
        f"(origins={config.server.allowed_origins})"
    )

    yield  # Application runs here

    # Shutdown
    await supervisor.stop()
    logger.info("Application shutdown complete")


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application with its own matching engine.

    Args:
        config: Settings to use. Defaults to the process-wide config.
    """
    config = config or get_config()

    app = FastAPI(
        title="ChatItNow API",
        description="Anonymous 1:1 chat matching server",
        version="0.1.0",
        lifespan=lifespan,
    )

    engine = MatchingEngine(config)
    app.state.config = config
    app.state.engine = engine
    app.state.supervisor = LifecycleSupervisor(engine)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        """Liveness check with a static body."""
        return "ChatItNow Server is Running!"

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    @app.get("/stats")
    async def stats(request: Request) -> dict:
        """Live counts of connections, searches and rooms."""
        return request.app.state.engine.stats()

    return app


app = create_app()


def run() -> None:
    """Run the server with uvicorn using the configured host and port."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "chatitnow.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
    )

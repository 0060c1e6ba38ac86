"""
Direct Messaging API - Main Application Entry Point.

This module initializes and configures the FastAPI application for the Direct
Messaging API. It sets up logging, the database, the real-time core,
middleware, and routes.

The application serves a one-to-one chat client: REST endpoints for accounts,
messages, rosters, profiles and uploads, and a single WebSocket endpoint over
which new messages, typing signals and presence changes are pushed.

Key Responsibilities:
- Build the FastAPI application through `create_app(settings)`.
- Set up middleware for correlation, error handling, performance and CORS.
- Create the `ChatHub` (store, connection registry, presence, relay, liveness
  monitor, auth, email, media) during the lifespan and store it on `app.state`.
- Mount API routers and the `/uploads` static directory.
- Close every live socket and stop the liveness monitor on shutdown.
"""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from api.auth_endpoints import router as auth_router
from api.endpoints import router, websocket_router
from api.health_router import health_router, monitoring_router
from core.config import Settings, get_settings
from core.logging_config import get_logger, setup_logging
from core.middleware import (
    CorrelationMiddleware,
    ErrorHandlingMiddleware,
    PerformanceMiddleware,
)
from services.chat_hub import ChatHub


def create_app(
    settings: Optional[Settings] = None, configure_logging: bool = True
) -> FastAPI:
    """Build the application for the given settings (environment by default)"""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        if configure_logging:
            setup_logging()
        logger = get_logger("api.startup")

        hub = ChatHub(settings)
        await hub.startup()
        app.state.hub = hub
        logger.info(
            "Service startup completed",
            extra={
                "environment": settings.environment,
                "heartbeat_interval": settings.heartbeat_interval,
            },
        )
        yield

        # Cleanup on shutdown
        logger.info("Shutting down Direct Messaging API")
        await hub.shutdown()
        logger.info("Cleanup completed")

    app = FastAPI(
        title="Direct Messaging API",
        description="One-to-one chat with real-time delivery and presence",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Added last runs first: CORS, then correlation, timing, error handling
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(PerformanceMiddleware)
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health routers first (no authentication required for monitoring)
    app.include_router(health_router)
    app.include_router(monitoring_router)

    app.include_router(auth_router)
    app.include_router(router)
    app.include_router(websocket_router)

    # Directory is created by the media store on startup
    app.mount(
        "/uploads",
        StaticFiles(directory=settings.uploads_dir, check_dir=False),
        name="uploads",
    )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=5000,
        reload=get_settings().environment == "development",
        log_level="info",
    )

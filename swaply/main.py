"""
Swaply messaging application.

WHAT: REST API, delivery gateway and attachment files in one ASGI app
WHY: Storage, the gateway service and the maintenance sweep share one process
HOW: FastAPI app with a lifespan owning the schema, the service loop and the sweeper
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .api.v1.router import api_router
from .core.config import settings
from .core.database import close_db, init_db
from .middleware.error_handler import register_exception_handlers
from .services.maintenance import MaintenanceSweeper
from .services.messaging_service import get_messaging_service
from .utils.logger import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: schema, service event loop, maintenance sweep. Shutdown in reverse.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    init_db()

    service = get_messaging_service()
    service.loop = asyncio.get_running_loop()
    sweeper = MaintenanceSweeper(service, loop=service.loop)
    sweeper.start()
    app.state.sweeper = sweeper
    logger.info(f"Messaging service ready (sweep every {settings.PROPOSAL_SWEEP_MINUTES}min, 0 = off)")

    yield

    sweeper.stop()
    close_db()
    logger.info("Messaging service stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(api_router)

# Stored attachments are served under the URL prefix LocalAttachmentStorage hands out
Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
app.mount("/uploads/messages", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "api": "/api/v1",
        "gateway": {"websocket": "/api/v1/ws", "sse": "/api/v1/gateway/stream"},
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "swaply.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Union

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.config import APP_ADDR, APP_PORT, COMMIT_HASH, ENV, LOG_LEVEL
from chatrelay.database import close_db, get_db, init_db
from chatrelay.errors import register_exception_handlers
from chatrelay.realtime import presence_registry
from chatrelay.routers.admin import router as admin_router
from chatrelay.routers.conversations import router as conversations_router
from chatrelay.routers.messages import router as messages_router
from chatrelay.routers.realtime import router as realtime_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup and shutdown."""
    # Startup
    await init_db()
    logger.info("Chat relay started (env=%s, version=%s)", ENV, COMMIT_HASH)
    yield
    # Shutdown
    await close_db()


app = FastAPI(
    title="Chat Relay",
    description="Real-time chat delivery with per-recipient receipts",
    version=COMMIT_HASH or "dev",
    lifespan=lifespan,
)

register_exception_handlers(app)

# Include routers
app.include_router(
    conversations_router, prefix="/api/conversations", tags=["conversations"]
)
app.include_router(messages_router, prefix="/api/messages", tags=["messages"])
app.include_router(admin_router, prefix="/api/admin", tags=["admin"])
app.include_router(realtime_router, tags=["realtime"])


@app.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Union[str, int, None]]:
    """Health check endpoint with database connectivity."""
    try:
        result = await db.execute(text("SELECT 1"))
        db_status = "connected" if result.scalar() == 1 else "error"
    except Exception as e:
        logger.warning("Health check database probe failed: %r", e)
        db_status = "disconnected"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
        "connections": len(presence_registry),
        "environment": ENV,
        "version": COMMIT_HASH,
    }


# If run directly, start the server
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=APP_ADDR, port=APP_PORT)

"""
surveysync — FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from surveysync.config.settings import settings
from surveysync.storage.database import init_db
from surveysync.sync.engine import sync_engine
from surveysync.api.sync_routes import router as sync_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler("surveysync.log"),
    ],
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("surveysync starting...")
    init_db()
    sync_engine.startup()
    if not settings.layer_url:
        logger.warning("LAYER_URL is not set — syncs will fail until it is configured")
    logger.info(f"API ready at http://{settings.api_host}:{settings.api_port}")
    yield
    logger.info("surveysync shutting down...")
    sync_engine.shutdown()


app = FastAPI(
    title="surveysync",
    description="Local cache and sync service for supervision survey layers",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router)


@app.get("/health")
def health():
    return {"status": "ok", "version": "0.1.0", "sync": sync_engine.status()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "surveysync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )

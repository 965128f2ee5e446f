from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .api.v1 import scheduler
from .core.logging_config import get_logger
from .database import init_db

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    logger.info("Newsletter delivery engine started")
    yield


app = FastAPI(
    title="Newsletter Delivery Engine",
    description="Campaign scheduling and A/B test delivery",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(scheduler.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "Newsletter delivery engine is running"}


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}

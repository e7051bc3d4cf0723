import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from fulfillment.config import settings
from fulfillment.database import init_db
from fulfillment.presentation.api import router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info(f"Fulfillment service started (queue backend: {settings.QUEUE_BACKEND})")

    yield

    logger.info("Fulfillment service stopping")


app = FastAPI(
    title="Fulfillment Service",
    description="Order fulfillment saga: ledger, warehouse, carrier and notifications",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "healthy", "queue_backend": settings.QUEUE_BACKEND}

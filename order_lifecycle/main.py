import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from order_lifecycle.config import settings
from order_lifecycle.database import engine
from order_lifecycle.presentation.api import router, admin_router, register_exception_handlers

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Order lifecycle service starting")
    yield
    await engine.dispose()
    logger.info("Order lifecycle service stopped")


app = FastAPI(
    title="Order Lifecycle Service",
    description="Per-item order status transitions, stock reservation and refunds",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(router, prefix="/api")
app.include_router(admin_router, prefix="/api")
register_exception_handlers(app)


@app.get("/health")
async def health():
    return {"status": "healthy"}

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
import asyncio
import logging

from utils.config import settings


def configure_logging():
    handlers = [logging.StreamHandler()]
    if settings.LOG_FILE:
        handlers.append(logging.FileHandler(settings.LOG_FILE))
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


configure_logging()
logger = logging.getLogger(__name__)

from api.admin import router as admin_router
from api.orders import router as orders_router
from api.payments import router as payments_router
from db.base import Base
from db.order_store import OrderStore
from db.session import SessionLocal, engine
from notifications import OrderNotifier, build_transport
from services.order_service import OrderService
from services.payment_gateway import MercadoPagoGateway
from utils.temporal import TemporalExpiryScheduler, get_temporal_client


async def create_tables(max_retries: int = 3, retry_delay: float = 1.0):
    """Creates missing tables, retrying while the database comes up."""
    for attempt in range(1, max_retries + 1):
        try:
            await asyncio.to_thread(Base.metadata.create_all, bind=engine)
            logger.info("Database tables ready")
            return
        except OperationalError as e:
            if attempt == max_retries:
                logger.error(f"Database unavailable after {max_retries} attempts: {e}")
                raise
            logger.warning(f"Database not ready (attempt {attempt}/{max_retries}): {e}")
            await asyncio.sleep(retry_delay * attempt)


async def connect_expiry_scheduler() -> TemporalExpiryScheduler | None:
    if not settings.ORDER_EXPIRY_ENABLED:
        logger.info("Order expiry disabled")
        return None
    try:
        client = await get_temporal_client(settings)
        logger.info(f"Connected to Temporal server at {settings.temporal_address} in namespace '{settings.TEMPORAL_NAMESPACE}'")
        return TemporalExpiryScheduler(client, settings.ORDER_EXPIRY_TASK_QUEUE)
    except Exception as e:
        # Orders still work without expiry; stale ones can be cleaned up from the admin endpoint
        logger.error(f"Failed to connect to Temporal, order expiry disabled: {e}")
        return None


async def build_order_service() -> OrderService:
    settings.validate()
    await create_tables()
    return OrderService(
        store=OrderStore(SessionLocal),
        gateway=MercadoPagoGateway.from_settings(settings),
        notifier=OrderNotifier.from_settings(settings, build_transport(settings)),
        settings=settings,
        expiry_scheduler=await connect_expiry_scheduler(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting order service ({settings.ENVIRONMENT})")
    app.state.order_service = await build_order_service()
    yield
    logger.info("Order service stopped")


app = FastAPI(title="Order Payment Service", lifespan=lifespan)

app.include_router(orders_router, prefix="/orders", tags=["orders"])
app.include_router(payments_router, prefix="/payments", tags=["payments"])
app.include_router(admin_router, prefix="/admin", tags=["admin"])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    content = {"success": False, "message": "Error interno del servidor"}
    if settings.is_development:
        content["error"] = str(exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


@app.get("/")
async def root():
    return {"service": "orders", "environment": settings.ENVIRONMENT, "status": "running"}


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import os
    import uvicorn
    host = os.getenv("API_HOST", "localhost")
    port = int(os.getenv("API_PORT", 8000))
    uvicorn.run("api.main:app", host=host, port=port, reload=settings.is_development)

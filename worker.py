import asyncio
import logging
from temporalio.client import Client
from temporalio.worker import Worker

from utils.config import settings
from utils.temporal import get_temporal_client
from workflows.order_expiry_workflow import OrderExpiryWorkflow
from activities.order_activities import all_activities as order_activities

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_worker(client: Client) -> Worker:
    return Worker(
        client,
        task_queue=settings.ORDER_EXPIRY_TASK_QUEUE,
        workflows=[OrderExpiryWorkflow],
        activities=order_activities,
        max_concurrent_activities=50,
    )


async def main():
    logger.info(f"Connecting to Temporal at {settings.temporal_address} (namespace {settings.TEMPORAL_NAMESPACE})...")
    try:
        client = await get_temporal_client(settings)
        logger.info("Successfully connected to Temporal")

        worker = build_worker(client)
        logger.info(
            f"Order expiry worker created for task queue {settings.ORDER_EXPIRY_TASK_QUEUE} "
            f"with {len(order_activities)} activities"
        )
        logger.info("Starting worker... Press Ctrl+C to exit")
        await worker.run()
    except Exception as e:
        logger.error(f"Error in worker: {e}")
        raise


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    finally:
        logger.info("Worker shutdown complete")

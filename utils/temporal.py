import logging

from temporalio.client import Client
from temporalio.exceptions import TemporalError, WorkflowAlreadyStartedError

from workflows.order_expiry_workflow import OrderExpiryWorkflow

logger = logging.getLogger(__name__)


async def get_temporal_client(settings) -> Client:
    """
    Connects to the Temporal server configured in settings
    """
    client = await Client.connect(settings.temporal_address, namespace=settings.TEMPORAL_NAMESPACE)
    return client


def expiry_workflow_id(order_id: str) -> str:
    return f"order-expiry-{order_id}"


class TemporalExpiryScheduler:
    """Starts and signals OrderExpiryWorkflow. Failures are logged, never raised."""

    def __init__(self, client: Client, task_queue: str):
        self.client = client
        self.task_queue = task_queue

    async def schedule(self, order_id: str, timeout_minutes: int) -> None:
        workflow_id = expiry_workflow_id(order_id)
        try:
            await self.client.start_workflow(
                OrderExpiryWorkflow.run,
                args=[order_id, timeout_minutes],
                id=workflow_id,
                task_queue=self.task_queue,
            )
            logger.info(f"Expiry scheduled for order {order_id} in {timeout_minutes} minutes")
        except WorkflowAlreadyStartedError:
            try:
                await self.client.get_workflow_handle(workflow_id).signal(OrderExpiryWorkflow.extend_deadline)
                logger.info(f"Expiry deadline extended for order {order_id}")
            except TemporalError as e:
                logger.error(f"Failed to extend expiry of order {order_id}: {e}")
        except TemporalError as e:
            logger.error(f"Failed to schedule expiry of order {order_id}: {e}")

    async def notify_settled(self, order_id: str) -> None:
        try:
            await self.client.get_workflow_handle(expiry_workflow_id(order_id)).signal(
                OrderExpiryWorkflow.payment_settled
            )
            logger.info(f"Expiry workflow of order {order_id} notified")
        except TemporalError as e:
            # Orders created without expiry have no workflow to signal
            logger.debug(f"No expiry workflow signalled for order {order_id}: {e}")

from temporalio import workflow
from temporalio.common import RetryPolicy
from datetime import timedelta
import asyncio

with workflow.unsafe.imports_passed_through():
    from activities.order_activities import expire_pending_order


@workflow.defn(name="OrderExpiryWorkflow")
class OrderExpiryWorkflow:
    """Cancels a MercadoPago order that is still unpaid when its payment window closes.

    A `payment_settled` signal ends the workflow without touching the order;
    `extend_deadline` restarts the wait (a new payment link was issued).
    """

    def __init__(self):
        self._settled: bool = False
        self._deadline_extended: bool = False
        self._state: str = "waiting"
        self._expire_retry_policy = RetryPolicy(
            initial_interval=timedelta(seconds=2),
            backoff_coefficient=2.0,
            maximum_interval=timedelta(seconds=30),
            maximum_attempts=3,
            non_retryable_error_types=["ApplicationError"],
        )

    @workflow.run
    async def run(self, order_id: str, timeout_minutes: int) -> str:
        workflow.logger.info(f"Order {order_id} expires in {timeout_minutes} minutes unless paid")

        while True:
            self._deadline_extended = False
            try:
                await workflow.wait_condition(
                    lambda: self._settled or self._deadline_extended,
                    timeout=timedelta(minutes=timeout_minutes),
                )
            except asyncio.TimeoutError:
                break
            if self._settled:
                workflow.logger.info(f"Order {order_id} settled, expiry stopped")
                self._state = "settled"
                return self._state
            workflow.logger.info(f"Expiry deadline of order {order_id} extended")

        self._state = "expiring"
        cancelled = await workflow.execute_activity(
            expire_pending_order,
            args=[order_id, timeout_minutes],
            start_to_close_timeout=timedelta(seconds=30),
            retry_policy=self._expire_retry_policy,
        )
        self._state = "expired" if cancelled else "unchanged"
        workflow.logger.info(f"Expiry of order {order_id} finished: {self._state}")
        return self._state

    @workflow.signal
    def payment_settled(self):
        self._settled = True

    @workflow.signal
    def extend_deadline(self):
        self._deadline_extended = True

    @workflow.query
    def get_state(self) -> str:
        return self._state

"""
Order Executor - the per-order state machine

    PENDING -> ROUTING -> BUILDING -> SUBMITTED -> CONFIRMED
                     \________ any step ________/-> FAILED

Every transition is written to the order store (row update and history
append in one transaction) and then published to the status fan-out.
A failed attempt either resets the order to PENDING for a job-level retry
or, when the error is permanent or attempts are exhausted, marks it FAILED.
Each run starts from scratch: quotes are re-fetched and the swap re-sent.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from loguru import logger

from .order_schemas import (
    Order, OrderStatus, StatusEvent, RoutingDecision, ExecutionResult, Quote, Job
)
from .dex_adapter import SwapExecutor
from .execution_router import ExecutionRouter
from .exceptions import (
    InfrastructureError, InvalidStatusTransitionError, OrderNotFoundError, SlippageExceededError
)
from .retry_policy import with_retry, should_retry_job


@dataclass
class ExecutorConfig:
    """Configuration for the order executor"""

    max_retries: int = 3                      # Retries per swap call
    retry_delay_seconds: float = 1.0          # Base backoff between swap retries
    swap_timeout_seconds: Optional[float] = 10.0
    verify_execution_slippage: bool = False   # Check executed amount against tolerance


class OrderExecutor:
    """
    Drives one order through routing, validation and execution

    Depends only on narrow collaborators: an order store (get / record_event /
    increment_retry_count), a router, a swap executor and something with
    `publish(event)`.
    """

    def __init__(self, order_store, router: ExecutionRouter, swap_executor: SwapExecutor,
                 publisher, config: Optional[ExecutorConfig] = None):
        self.order_store = order_store
        self.router = router
        self.swap_executor = swap_executor
        self.publisher = publisher
        self.config = config or ExecutorConfig()

        # Performance tracking
        self.orders_confirmed = 0
        self.orders_failed = 0
        self.attempts_retried = 0

    async def execute_order(self, order_id: str, job: Optional[Job] = None) -> Order:
        """
        Run the pipeline for an order

        Args:
            order_id: Order to execute
            job: Scheduling envelope; without one the run is a single final attempt

        Returns:
            The order in its final state for this attempt

        Raises:
            The attempt's error, after the order was reset for retry or marked FAILED
        """
        order = self.order_store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        if order.is_terminal:
            logger.info(f"Order {order_id} already {order.status.value}; nothing to do")
            return order

        attempt = job.attempts_made if job else 1
        start = time.perf_counter()
        logger.info(f"Starting execution for order {order_id} (attempt {attempt})")

        try:
            if order.status != OrderStatus.PENDING:
                # Interrupted mid-pipeline by a crash; restart the path
                self._transition(order, OrderStatus.PENDING,
                                 message="Restarting pipeline after interrupted attempt")

            self._transition(order, OrderStatus.ROUTING)
            decision = await self.router.route_order(order)
            self._publish_routing(order, decision)

            self._transition(order, OrderStatus.BUILDING)
            minimum_output = self._check_quote_slippage(order, decision.selected)

            self._transition(order, OrderStatus.SUBMITTED)
            result = await self._execute_swap(order, decision.selected)

            if self.config.verify_execution_slippage:
                self._check_execution_slippage(result, decision.selected, minimum_output)

            self._confirm(order, result)

        except Exception as e:
            self._handle_failure(order, e, job)
            raise

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"Order {order_id} completed successfully in {elapsed_ms:.0f}ms: "
                    f"{order.executed_amount:.6f} {order.token_out} via {order.venue.value}")
        return order

    def _transition(self, order: Order, status: OrderStatus, **fields: Any) -> StatusEvent:
        if not order.status.can_transition_to(status):
            raise InvalidStatusTransitionError(
                f"Order {order.order_id}: {order.status.value} -> {status.value} not allowed"
            )

        event = StatusEvent(order_id=order.order_id, status=status,
                            retry_count=order.retry_count, **fields)
        self.order_store.record_event(event)
        order.apply_event(event)
        self.publisher.publish(event)

        logger.debug(f"Order {order.order_id} -> {status.value}")
        return event

    def _publish_routing(self, order: Order, decision: RoutingDecision) -> None:
        """Record the routing snapshot; status stays ROUTING"""
        self._transition(order, OrderStatus.ROUTING, routing=decision.to_dict())

    def _check_quote_slippage(self, order: Order, quote: Quote) -> float:
        """
        Validate the selected quote against the order's tolerance

        The threshold derives from the quote itself, so this only trips on a
        malformed quote; the executed amount is the real test (see
        verify_execution_slippage).
        """
        minimum_output = order.minimum_output(quote.output_amount)
        if quote.output_amount < minimum_output:
            raise SlippageExceededError(
                "Slippage tolerance exceeded during quote",
                expected=quote.output_amount, minimum=minimum_output
            )
        return minimum_output

    def _check_execution_slippage(self, result: ExecutionResult, quote: Quote,
                                  minimum_output: float) -> None:
        if result.executed_amount < minimum_output:
            raise SlippageExceededError(
                f"Slippage tolerance exceeded: executed {result.executed_amount:.6f} "
                f"< minimum {minimum_output:.6f} (tx {result.tx_hash})",
                expected=quote.output_amount, minimum=minimum_output
            )

    async def _execute_swap(self, order: Order, quote: Quote) -> ExecutionResult:
        return await with_retry(
            lambda: self.swap_executor.execute_swap(order, quote),
            max_attempts=self.config.max_retries,
            base_delay=self.config.retry_delay_seconds,
            timeout=self.config.swap_timeout_seconds,
            name=f"{quote.venue.value} swap for {order.order_id}"
        )

    def _confirm(self, order: Order, result: ExecutionResult) -> None:
        self._transition(
            order, OrderStatus.CONFIRMED,
            tx_hash=result.tx_hash,
            executed_price=result.executed_price,
            executed_amount=result.executed_amount,
            venue=result.venue
        )
        self.orders_confirmed += 1

    def _handle_failure(self, order: Order, error: Exception, job: Optional[Job]) -> None:
        error_message = str(error) or error.__class__.__name__
        if order.is_terminal:
            # Outcome already recorded; the error came after the final write
            logger.error(f"Order {order.order_id} errored after reaching "
                         f"{order.status.value}: {error_message}")
            return
        logger.error(f"Order {order.order_id} failed: {error_message}")

        order.retry_count = self.order_store.increment_retry_count(order.order_id)
        attempts_made = job.attempts_made if job else 1
        max_attempts = job.max_attempts if job else 1

        # Store outages never settle an order; the queue retries the job
        if isinstance(error, InfrastructureError) or should_retry_job(error, attempts_made,
                                                                      max_attempts):
            self._transition(order, OrderStatus.PENDING,
                             message=f"Retrying after error: {error_message}")
            self.attempts_retried += 1
            logger.warning(f"Order {order.order_id} will be retried "
                           f"(attempt {attempts_made}/{max_attempts})")
        else:
            self._transition(order, OrderStatus.FAILED, error=error_message)
            self.orders_failed += 1
            logger.error(f"Order {order.order_id} permanently failed after "
                         f"{order.retry_count} failed attempts: {error_message}")

    def get_performance_summary(self) -> Dict[str, Any]:
        return {
            'orders_confirmed': self.orders_confirmed,
            'orders_failed': self.orders_failed,
            'attempts_retried': self.attempts_retried,
            'orders_routed': self.router.total_orders_routed,
            'routes_by_venue': {venue.value: count
                                for venue, count in self.router.routes_by_venue.items()}
        }

"""
Order state machine: status paths, failure handling and job-level retry
"""

import pytest

from src.execution_engine.order_schemas import Job, Order, OrderStatus, Venue
from src.execution_engine.execution_router import ExecutionRouter, RoutingConfig
from src.execution_engine.order_executor import OrderExecutor, ExecutorConfig
from src.execution_engine.exceptions import (
    OrderNotFoundError, QuoteError, RoutingError, SlippageExceededError, StoreUnavailableError,
    SwapExecutionError
)

from tests.conftest import FakeVenues, make_order


def build_executor(order_store, venues, publisher, **config) -> OrderExecutor:
    router = ExecutionRouter(venues, RoutingConfig(max_retries=1, retry_delay_seconds=0.001,
                                                   quote_timeout_seconds=1.0))
    executor_config = ExecutorConfig(max_retries=1, retry_delay_seconds=0.001,
                                     swap_timeout_seconds=1.0, **config)
    return OrderExecutor(order_store, router, venues, publisher, executor_config)


def job_for(order: Order, attempts_made: int, max_attempts: int = 4) -> Job:
    return Job(job_id=order.order_id, order_id=order.order_id,
               attempts_made=attempts_made, max_attempts=max_attempts)


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_confirmed_status_sequence(self, order_store, venues, publisher):
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)

        result = await executor.execute_order(order.order_id, job_for(order, 1))

        assert result.status == OrderStatus.CONFIRMED
        assert publisher.statuses() == ['routing', 'routing', 'building', 'submitted', 'confirmed']

        history = order_store.list_history(order.order_id)
        assert [e.status.value for e in history] == [
            'pending', 'routing', 'routing', 'building', 'submitted', 'confirmed'
        ]
        assert [e.sequence for e in history] == [1, 2, 3, 4, 5, 6]
        # Published events carry the sequence assigned by the store
        assert [e.sequence for e in publisher.events] == [2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_result_fields_persisted(self, order_store, venues, publisher):
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)

        await executor.execute_order(order.order_id)

        stored = order_store.get(order.order_id)
        assert stored.venue == Venue.METEORA
        assert stored.executed_amount == 100.0
        assert len(stored.tx_hash) == 88
        assert stored.error is None
        assert Order.from_history(order_store.list_history(order.order_id)) == stored

    @pytest.mark.asyncio
    async def test_routing_event_snapshots_all_quotes(self, order_store, venues, publisher):
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)

        await executor.execute_order(order.order_id)

        routing = [e for e in publisher.events if e.routing is not None]
        assert len(routing) == 1
        assert routing[0].status == OrderStatus.ROUTING
        assert routing[0].routing['selected'] == 'meteora'
        assert routing[0].routing['raydium']['output_amount'] == 99.0

    @pytest.mark.asyncio
    async def test_terminal_order_is_noop(self, order_store, venues, publisher):
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)
        await executor.execute_order(order.order_id)
        publisher.events.clear()

        again = await executor.execute_order(order.order_id, job_for(order, 2))

        assert again.status == OrderStatus.CONFIRMED
        assert publisher.events == []
        assert len(venues.swap_calls) == 1


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_order(self, order_store, venues, publisher):
        executor = build_executor(order_store, venues, publisher)
        with pytest.raises(OrderNotFoundError):
            await executor.execute_order("missing")

    @pytest.mark.asyncio
    async def test_slippage_is_permanent(self, order_store, publisher):
        venues = FakeVenues(swap_errors=[SlippageExceededError()])
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)

        with pytest.raises(SlippageExceededError):
            await executor.execute_order(order.order_id, job_for(order, 1))

        stored = order_store.get(order.order_id)
        assert stored.status == OrderStatus.FAILED
        assert stored.error == "Slippage tolerance exceeded"
        assert stored.retry_count == 1
        assert len(venues.swap_calls) == 1
        assert publisher.statuses()[-1] == 'failed'
        assert publisher.events[-1].error == "Slippage tolerance exceeded"

    @pytest.mark.asyncio
    async def test_transient_failure_resets_to_pending(self, order_store, publisher):
        venues = FakeVenues(swap_errors=[SwapExecutionError("rpc timeout")] * 2)
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)

        with pytest.raises(SwapExecutionError):
            await executor.execute_order(order.order_id, job_for(order, 1))

        stored = order_store.get(order.order_id)
        assert stored.status == OrderStatus.PENDING
        assert stored.retry_count == 1
        assert stored.error is None
        assert publisher.events[-1].message == "Retrying after error: rpc timeout"

        # Next job attempt starts over and succeeds
        result = await executor.execute_order(order.order_id, job_for(order, 2))
        assert result.status == OrderStatus.CONFIRMED
        assert result.retry_count == 1
        assert publisher.statuses() == [
            'routing', 'routing', 'building', 'submitted', 'pending',
            'routing', 'routing', 'building', 'submitted', 'confirmed'
        ]
        assert Order.from_history(order_store.list_history(order.order_id)) == \
            order_store.get(order.order_id)

    @pytest.mark.asyncio
    async def test_final_attempt_marks_failed(self, order_store, publisher):
        venues = FakeVenues(quote_errors={
            Venue.RAYDIUM: QuoteError("raydium", "down"),
            Venue.METEORA: QuoteError("meteora", "down")
        })
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)

        with pytest.raises(RoutingError):
            await executor.execute_order(order.order_id, job_for(order, 4, max_attempts=4))

        stored = order_store.get(order.order_id)
        assert stored.status == OrderStatus.FAILED
        assert "No venue returned a quote" in stored.error
        assert publisher.statuses() == ['routing', 'failed']

    @pytest.mark.asyncio
    async def test_without_job_a_failure_is_final(self, order_store, publisher):
        venues = FakeVenues(swap_errors=[SwapExecutionError("rpc timeout")] * 2)
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)

        with pytest.raises(SwapExecutionError):
            await executor.execute_order(order.order_id)

        assert order_store.get(order.order_id).status == OrderStatus.FAILED

    @pytest.mark.asyncio
    async def test_execution_slippage_check(self, order_store, publisher):
        # Fill 2% below quote with a 1% tolerance
        venues = FakeVenues(fill_ratio=0.98)
        order = order_store.create(make_order(slippage=0.01))
        executor = build_executor(order_store, venues, publisher,
                                  verify_execution_slippage=True)

        with pytest.raises(SlippageExceededError):
            await executor.execute_order(order.order_id, job_for(order, 1))

        stored = order_store.get(order.order_id)
        assert stored.status == OrderStatus.FAILED
        assert "Slippage tolerance exceeded" in stored.error

    @pytest.mark.asyncio
    async def test_execution_slippage_within_tolerance(self, order_store, publisher):
        venues = FakeVenues(fill_ratio=0.995)
        order = order_store.create(make_order(slippage=0.01))
        executor = build_executor(order_store, venues, publisher,
                                  verify_execution_slippage=True)

        result = await executor.execute_order(order.order_id, job_for(order, 1))
        assert result.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_interrupted_order_restarts_from_pending(self, order_store, venues, publisher):
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)
        # Simulate a crash after SUBMITTED was written
        executor._transition(order, OrderStatus.ROUTING)
        executor._transition(order, OrderStatus.BUILDING)
        executor._transition(order, OrderStatus.SUBMITTED)
        publisher.events.clear()

        result = await executor.execute_order(order.order_id, job_for(order, 2))

        assert result.status == OrderStatus.CONFIRMED
        assert publisher.statuses()[0] == 'pending'
        assert publisher.events[0].message == "Restarting pipeline after interrupted attempt"

    @pytest.mark.asyncio
    async def test_performance_summary(self, order_store, venues, publisher):
        order = order_store.create(make_order())
        executor = build_executor(order_store, venues, publisher)
        await executor.execute_order(order.order_id)

        summary = executor.get_performance_summary()
        assert summary['orders_confirmed'] == 1
        assert summary['routes_by_venue'] == {'meteora': 1}


class StoreOutage:
    """Order store whose record_event fails once on a chosen status"""

    def __init__(self, order_store, fail_on: OrderStatus):
        self.order_store = order_store
        self.fail_on = fail_on
        self.failures = 0

    def record_event(self, event):
        if event.status == self.fail_on and not self.failures:
            self.failures += 1
            raise StoreUnavailableError("Database operation failed: locked")
        return self.order_store.record_event(event)

    def __getattr__(self, name):
        return getattr(self.order_store, name)


class TestStoreOutage:

    @pytest.mark.asyncio
    async def test_outage_on_final_attempt_does_not_fail_order(self, order_store, venues,
                                                                publisher):
        order = order_store.create(make_order())
        flaky = StoreOutage(order_store, fail_on=OrderStatus.SUBMITTED)
        executor = build_executor(flaky, venues, publisher)

        with pytest.raises(StoreUnavailableError):
            await executor.execute_order(order.order_id, job_for(order, 1, max_attempts=1))

        stored = order_store.get(order.order_id)
        assert stored.status == OrderStatus.PENDING
        assert stored.error is None
        assert executor.orders_failed == 0
        assert "locked" in publisher.events[-1].message

        # The queue's next delivery finishes the order
        result = await executor.execute_order(order.order_id, job_for(order, 2, max_attempts=1))
        assert result.status == OrderStatus.CONFIRMED
        history = order_store.list_history(order.order_id)
        assert [e.status for e in history].count(OrderStatus.FAILED) == 0

    @pytest.mark.asyncio
    async def test_slippage_error_reports_quoted_output(self, order_store, publisher):
        venues = FakeVenues(fill_ratio=0.98)
        order = order_store.create(make_order(slippage=0.01))
        executor = build_executor(order_store, venues, publisher,
                                  verify_execution_slippage=True)

        with pytest.raises(SlippageExceededError) as excinfo:
            await executor.execute_order(order.order_id, job_for(order, 1))

        assert excinfo.value.expected == pytest.approx(100.0)
        assert excinfo.value.minimum == pytest.approx(99.0)

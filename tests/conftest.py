"""
Shared fixtures: in-memory storage and zero-latency fake venues
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from src.execution_engine.order_schemas import (
    Order, OrderType, Quote, ExecutionResult, StatusEvent, Venue
)
from src.execution_engine.dex_adapter import QuoteSource, SwapExecutor
from src.execution_engine.status_fanout import StatusTransport
from src.persistence import Database, OrderStore, JobStore


class FakeVenues(QuoteSource, SwapExecutor):
    """Deterministic venues with scriptable failures"""

    def __init__(self, outputs: Optional[Dict[Venue, float]] = None,
                 quote_errors: Optional[Dict[Venue, Exception]] = None,
                 swap_errors: Optional[List[Exception]] = None,
                 quote_delay: float = 0.0, swap_delay: float = 0.0,
                 fill_ratio: float = 1.0):
        self.outputs = outputs or {Venue.RAYDIUM: 99.0, Venue.METEORA: 100.0}
        self.quote_errors = quote_errors or {}
        self.swap_errors = list(swap_errors or [])
        self.quote_delay = quote_delay
        self.swap_delay = swap_delay
        self.fill_ratio = fill_ratio

        self.quote_calls = 0
        self.swap_calls: List[str] = []
        self.active_swaps: Dict[str, int] = {}
        self.max_concurrent_same_order = 0
        self.max_concurrent_swaps = 0

    @property
    def venues(self) -> tuple:
        return tuple(self.outputs)

    async def get_quote(self, venue, token_in, token_out, amount_in) -> Quote:
        self.quote_calls += 1
        if self.quote_delay:
            await asyncio.sleep(self.quote_delay)
        if venue in self.quote_errors:
            raise self.quote_errors[venue]
        output = self.outputs[venue]
        return Quote(venue=venue, price=output / amount_in, fee=0.003,
                     output_amount=output, price_impact=0.1)

    async def execute_swap(self, order: Order, quote: Quote) -> ExecutionResult:
        self.swap_calls.append(order.order_id)
        self.active_swaps[order.order_id] = self.active_swaps.get(order.order_id, 0) + 1
        self.max_concurrent_same_order = max(self.max_concurrent_same_order,
                                             self.active_swaps[order.order_id])
        self.max_concurrent_swaps = max(self.max_concurrent_swaps,
                                        sum(self.active_swaps.values()))
        try:
            if self.swap_delay:
                await asyncio.sleep(self.swap_delay)
            if self.swap_errors:
                raise self.swap_errors.pop(0)
            return ExecutionResult(
                tx_hash="T" * 88,
                executed_price=quote.price * self.fill_ratio,
                executed_amount=quote.output_amount * self.fill_ratio,
                venue=quote.venue
            )
        finally:
            self.active_swaps[order.order_id] -= 1


class RecordingPublisher:
    """Captures published status events"""

    def __init__(self):
        self.events: List[StatusEvent] = []

    def publish(self, event: StatusEvent) -> bool:
        self.events.append(event)
        return True

    def statuses(self, order_id: Optional[str] = None) -> List[str]:
        return [e.status.value for e in self.events
                if order_id is None or e.order_id == order_id]


class FakeTransport(StatusTransport):
    """In-memory transport that records sent messages"""

    def __init__(self, fail_sends: bool = False):
        self.messages: List[dict] = []
        self.open = True
        self.closed_by_server = False
        self.fail_sends = fail_sends

    @property
    def is_open(self) -> bool:
        return self.open

    async def send(self, message: dict) -> None:
        if self.fail_sends:
            raise ConnectionError("socket reset")
        self.messages.append(message)

    async def close(self) -> None:
        self.open = False
        self.closed_by_server = True

    def disconnect(self) -> None:
        self.open = False


def make_order(**overrides) -> Order:
    fields = dict(
        order_id=Order.generate_order_id(),
        order_type=OrderType.MARKET,
        token_in="SOL",
        token_out="USDC",
        amount_in=100.0,
        slippage=0.01
    )
    fields.update(overrides)
    return Order(**fields)


@pytest.fixture
def database():
    db = Database("sqlite://")
    yield db
    db.dispose()


@pytest.fixture
def order_store(database):
    return OrderStore(database)


@pytest.fixture
def job_store(database):
    return JobStore(database)


@pytest.fixture
def venues():
    return FakeVenues()


@pytest.fixture
def publisher():
    return RecordingPublisher()

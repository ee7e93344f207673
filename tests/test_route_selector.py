"""
Route selection and venue quoting
"""

import time

import pytest

from src.execution_engine.order_schemas import Quote, Venue
from src.execution_engine.execution_router import ExecutionRouter, RoutingConfig, select_best
from src.execution_engine.exceptions import QuoteError, RoutingError

from tests.conftest import FakeVenues, make_order


def quote(venue: Venue, output: float) -> Quote:
    return Quote(venue=venue, price=output / 100, fee=0.003, output_amount=output,
                 price_impact=0.1)


FAST_RETRY = RoutingConfig(max_retries=1, retry_delay_seconds=0.001, quote_timeout_seconds=1.0)


class TestSelectBest:
    """Greatest net output wins"""

    def test_picks_greatest_output(self):
        a = quote(Venue.RAYDIUM, 314.55)
        b = quote(Venue.METEORA, 317.64)
        assert select_best([a, b]) is b
        assert select_best([b, a]) is b

    def test_tie_keeps_first(self):
        a = quote(Venue.RAYDIUM, 200.0)
        b = quote(Venue.METEORA, 200.0)
        assert select_best([a, b]) is a
        assert select_best([b, a]) is b

    def test_single_quote(self):
        a = quote(Venue.METEORA, 1.0)
        assert select_best([a]) is a


class TestExecutionRouter:

    @pytest.mark.asyncio
    async def test_routes_to_best_venue(self):
        venues = FakeVenues(outputs={Venue.RAYDIUM: 101.0, Venue.METEORA: 100.0})
        router = ExecutionRouter(venues, FAST_RETRY)

        decision = await router.route_order(make_order())

        assert decision.selected.venue == Venue.RAYDIUM
        assert set(decision.quotes) == {Venue.RAYDIUM, Venue.METEORA}
        assert router.total_orders_routed == 1
        assert router.routes_by_venue[Venue.RAYDIUM] == 1

        snapshot = decision.to_dict()
        assert snapshot['selected'] == 'raydium'
        assert snapshot['meteora']['output_amount'] == 100.0

    @pytest.mark.asyncio
    async def test_quotes_fetched_concurrently(self):
        venues = FakeVenues(quote_delay=0.2)
        router = ExecutionRouter(venues, FAST_RETRY)

        start = time.perf_counter()
        await router.route_order(make_order())
        elapsed = time.perf_counter() - start

        # Two 200ms venues in parallel, not 400ms in sequence
        assert elapsed < 0.35

    @pytest.mark.asyncio
    async def test_partial_outage_uses_remaining_venue(self):
        venues = FakeVenues(
            outputs={Venue.RAYDIUM: 150.0, Venue.METEORA: 100.0},
            quote_errors={Venue.RAYDIUM: QuoteError("raydium", "pool unavailable")}
        )
        router = ExecutionRouter(venues, FAST_RETRY)

        decision = await router.route_order(make_order())

        assert decision.selected.venue == Venue.METEORA
        assert Venue.RAYDIUM in decision.errors
        assert decision.to_dict()['raydium'] == {'error': decision.errors[Venue.RAYDIUM]}
        # 1 try + 1 retry for the failing venue, 1 for the healthy one
        assert venues.quote_calls == 3

    @pytest.mark.asyncio
    async def test_all_venues_failing_raises_routing_error(self):
        venues = FakeVenues(quote_errors={
            Venue.RAYDIUM: QuoteError("raydium", "down"),
            Venue.METEORA: QuoteError("meteora", "down")
        })
        router = ExecutionRouter(venues, FAST_RETRY)

        with pytest.raises(RoutingError) as exc_info:
            await router.route_order(make_order())

        assert "raydium" in str(exc_info.value)
        assert "meteora" in str(exc_info.value)
        assert router.total_orders_routed == 0

"""
Simulated DEX venues
"""

import math
import random

import pytest

from src.execution_engine.order_schemas import Venue
from src.execution_engine.dex_adapter import (
    BASE58_ALPHABET, TX_HASH_LENGTH, DexConfig, MockDexRouter,
    calculate_price_impact, generate_mock_tx_hash
)
from src.execution_engine.exceptions import SlippageExceededError

from tests.conftest import make_order


def instant_dex(seed: int = 7, **overrides) -> MockDexRouter:
    config = dict(raydium_latency_ms=0, meteora_latency_ms=0, execution_latency_ms=0,
                  execution_jitter_ms=0, swap_failure_rate=0.0)
    config.update(overrides)
    return MockDexRouter(DexConfig(**config), rng=random.Random(seed))


class TestPricing:

    def test_base_price_is_deterministic_per_pair(self):
        seed = math.sin(ord('S') + ord('U')) * 10000
        expected = 0.5 + (seed - math.floor(seed)) * 10

        assert MockDexRouter.get_base_price("SOL", "USDC") == pytest.approx(expected)
        assert MockDexRouter.get_base_price("SOL", "USDT") == MockDexRouter.get_base_price("SOL", "USDC")
        assert 0.5 <= expected < 10.5

    def test_price_impact(self):
        assert calculate_price_impact(1000, 100000) == pytest.approx(1.0)
        assert calculate_price_impact(100, 120000) == pytest.approx(100 / 1200)

    @pytest.mark.asyncio
    async def test_quote_applies_fee_and_impact(self):
        dex = instant_dex()
        base = MockDexRouter.get_base_price("SOL", "USDC")

        for venue in (Venue.RAYDIUM, Venue.METEORA):
            quote = await dex.get_quote(venue, "SOL", "USDC", 100)
            profile = dex.profiles[venue]

            assert quote.venue == venue
            assert quote.fee == profile.fee
            assert quote.price_impact == pytest.approx(100 / profile.liquidity_depth * 100)
            assert quote.output_amount == pytest.approx(100 * quote.price * (1 - profile.fee))
            low = base * profile.variance_low * (1 - quote.price_impact / 100)
            high = base * profile.variance_high * (1 - quote.price_impact / 100)
            assert low <= quote.price <= high

    def test_venue_profiles(self):
        dex = instant_dex()
        assert dex.venues == (Venue.RAYDIUM, Venue.METEORA)
        assert dex.profiles[Venue.RAYDIUM].fee == 0.003
        assert dex.profiles[Venue.METEORA].fee == 0.002
        assert dex.profiles[Venue.METEORA].liquidity_depth == 120000


class TestExecution:

    @pytest.mark.asyncio
    async def test_fill_within_variance_of_quote(self):
        dex = instant_dex()
        order = make_order()

        for _ in range(20):
            quote = await dex.get_quote(Venue.METEORA, "SOL", "USDC", 100)
            result = await dex.execute_swap(order, quote)

            assert result.venue == Venue.METEORA
            assert quote.output_amount * 0.995 <= result.executed_amount <= quote.output_amount * 1.005
            assert quote.price * 0.995 <= result.executed_price <= quote.price * 1.005

    @pytest.mark.asyncio
    async def test_slippage_failure(self):
        dex = instant_dex(swap_failure_rate=1.0)
        quote = await dex.get_quote(Venue.RAYDIUM, "SOL", "USDC", 100)

        with pytest.raises(SlippageExceededError):
            await dex.execute_swap(make_order(), quote)

    def test_tx_hash_shape(self):
        tx_hash = generate_mock_tx_hash(random.Random(1))
        assert len(tx_hash) == TX_HASH_LENGTH == 88
        assert set(tx_hash) <= set(BASE58_ALPHABET)
        assert not set("0OIl") & set(BASE58_ALPHABET)

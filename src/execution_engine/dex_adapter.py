"""
DEX Adapter - Interface to liquidity venues for quoting and swapping

Provides the two collaborator contracts the pipeline depends on:
- QuoteSource: price a swap on one venue
- SwapExecutor: execute a swap against a previously obtained quote

Current implementation: MockDexRouter, a simulated Raydium/Meteora feed
with configurable latency, price variance and failure rate. A production
adapter for real venues implements the same two methods.
"""

import asyncio
import math
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional
from loguru import logger

from .order_schemas import Order, Quote, ExecutionResult, Venue
from .exceptions import QuoteError, SlippageExceededError


BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
TX_HASH_LENGTH = 88


@dataclass
class VenueProfile:
    """Static pricing characteristics of a simulated venue"""

    venue: Venue
    fee: float                  # Fee fraction
    liquidity_depth: float      # Pool depth used for price impact
    variance_low: float         # Lower bound of price variance multiplier
    variance_high: float        # Upper bound of price variance multiplier
    latency_ms: float = 200.0   # Quote latency


@dataclass
class DexConfig:
    """Configuration for the simulated DEX"""

    raydium_latency_ms: float = 200.0
    meteora_latency_ms: float = 200.0
    execution_latency_ms: float = 2500.0
    execution_jitter_ms: float = 1000.0     # Added uniformly on top of execution latency
    swap_failure_rate: float = 0.05         # Probability a swap breaches slippage
    execution_variance: float = 0.005       # Executed price within +/- this fraction of quote


class QuoteSource(ABC):
    """Produces quotes; must be safe to call concurrently for distinct venues"""

    @property
    @abstractmethod
    def venues(self) -> tuple:
        """Venues this source can quote"""
        pass

    @abstractmethod
    async def get_quote(self, venue: Venue, token_in: str, token_out: str,
                        amount_in: float) -> Quote:
        """Quote swapping amount_in of token_in for token_out on a venue"""
        pass


class SwapExecutor(ABC):
    """Executes swaps against quotes"""

    @abstractmethod
    async def execute_swap(self, order: Order, quote: Quote) -> ExecutionResult:
        """Execute the order on the quote's venue"""
        pass


def calculate_price_impact(amount_in: float, liquidity_depth: float) -> float:
    """Price impact in percent for a trade against a pool of given depth"""
    return (amount_in / liquidity_depth) * 100


def generate_mock_tx_hash(rng: Optional[random.Random] = None) -> str:
    """Random base58 string shaped like a Solana transaction signature"""
    rng = rng or random
    return ''.join(rng.choice(BASE58_ALPHABET) for _ in range(TX_HASH_LENGTH))


class MockDexRouter(QuoteSource, SwapExecutor):
    """
    Simulated Raydium + Meteora liquidity

    Prices are deterministic per token pair with a random per-quote
    variance. Swaps take execution latency, occasionally fail on slippage
    and fill within a small band around the quote.
    """

    def __init__(self, config: Optional[DexConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or DexConfig()
        self.rng = rng or random.Random()

        self.profiles: Dict[Venue, VenueProfile] = {
            Venue.RAYDIUM: VenueProfile(
                venue=Venue.RAYDIUM,
                fee=0.003,
                liquidity_depth=100000,
                variance_low=0.98,
                variance_high=1.02,
                latency_ms=self.config.raydium_latency_ms
            ),
            Venue.METEORA: VenueProfile(
                venue=Venue.METEORA,
                fee=0.002,
                liquidity_depth=120000,
                variance_low=0.97,
                variance_high=1.02,
                latency_ms=self.config.meteora_latency_ms
            )
        }

    @property
    def venues(self) -> tuple:
        return tuple(self.profiles)

    async def get_quote(self, venue: Venue, token_in: str, token_out: str,
                        amount_in: float) -> Quote:
        profile = self.profiles.get(venue)
        if profile is None:
            raise QuoteError(str(venue), "venue not supported")

        await asyncio.sleep(profile.latency_ms / 1000.0)

        base_price = self.get_base_price(token_in, token_out)
        price = base_price * self.rng.uniform(profile.variance_low, profile.variance_high)

        price_impact = calculate_price_impact(amount_in, profile.liquidity_depth)
        effective_price = price * (1 - price_impact / 100)
        output_amount = amount_in * effective_price * (1 - profile.fee)

        return Quote(
            venue=venue,
            price=effective_price,
            fee=profile.fee,
            output_amount=output_amount,
            price_impact=price_impact
        )

    async def execute_swap(self, order: Order, quote: Quote) -> ExecutionResult:
        start = time.perf_counter()
        execution_ms = self.config.execution_latency_ms + self.rng.random() * self.config.execution_jitter_ms
        await asyncio.sleep(execution_ms / 1000.0)

        if self.rng.random() < self.config.swap_failure_rate:
            raise SlippageExceededError("Slippage tolerance exceeded")

        variance = self.config.execution_variance
        multiplier = self.rng.uniform(1 - variance, 1 + variance)
        result = ExecutionResult(
            tx_hash=generate_mock_tx_hash(self.rng),
            executed_price=quote.price * multiplier,
            executed_amount=quote.output_amount * multiplier,
            venue=quote.venue
        )

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"Swap executed on {quote.venue.value}: tx={result.tx_hash} "
                    f"price={result.executed_price:.6f} amount={result.executed_amount:.6f} "
                    f"({elapsed_ms:.0f}ms) for order {order.order_id}")
        return result

    @staticmethod
    def get_base_price(token_in: str, token_out: str) -> float:
        """Deterministic pseudo-price for a token pair"""
        seed = ord(token_in[0]) + ord(token_out[0])
        random_seed = math.sin(seed) * 10000
        return 0.5 + (random_seed - math.floor(random_seed)) * 10

"""
Execution Router - Venue selection for swap orders

Features:
- Quotes every configured venue concurrently (latency ~ slowest venue)
- Per-venue retry with exponential backoff and per-attempt timeout
- Picks the venue with the greatest net output
- Tolerates partial venue outages; fails only when every venue fails
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from loguru import logger

from .order_schemas import Order, Quote, RoutingDecision, Venue
from .dex_adapter import QuoteSource
from .exceptions import RoutingError
from .retry_policy import with_retry


@dataclass
class RoutingConfig:
    """Configuration for execution routing"""

    max_retries: int = 3                  # Retries per venue quote
    retry_delay_seconds: float = 1.0      # Base backoff between quote retries
    quote_timeout_seconds: Optional[float] = 5.0
    venues: Optional[List[Venue]] = None  # Defaults to every venue the source offers


def select_best(quotes: Sequence[Quote]) -> Quote:
    """
    Pick the quote with the strictly greatest output amount

    Ties keep the earliest quote. Callers guarantee a non-empty sequence.
    """
    best = quotes[0]
    for quote in quotes[1:]:
        if quote.output_amount > best.output_amount:
            best = quote
    return best


class ExecutionRouter:
    """
    Smart order router across DEX venues

    Fetches a quote from every venue in parallel and returns a routing
    decision holding all quotes plus the selected one.
    """

    def __init__(self, quote_source: QuoteSource, config: Optional[RoutingConfig] = None):
        self.quote_source = quote_source
        self.config = config or RoutingConfig()

        # Performance tracking
        self.total_orders_routed = 0
        self.routes_by_venue: Dict[Venue, int] = {}

    @property
    def venues(self) -> List[Venue]:
        return list(self.config.venues or self.quote_source.venues)

    async def route_order(self, order: Order) -> RoutingDecision:
        """
        Route an order to the venue with the best net output

        Raises:
            RoutingError: every venue failed to quote
        """
        venues = self.venues
        results = await asyncio.gather(
            *(self._fetch_quote(venue, order) for venue in venues),
            return_exceptions=True
        )

        quotes: Dict[Venue, Quote] = {}
        errors: Dict[Venue, str] = {}
        last_error: Optional[BaseException] = None

        for venue, result in zip(venues, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                errors[venue] = str(result)
                last_error = result
                logger.warning(f"No quote from {venue.value} for order {order.order_id}: {result}")
            else:
                quotes[venue] = result

        if not quotes:
            raise RoutingError(
                f"No venue returned a quote for {order.token_in}/{order.token_out}: "
                + "; ".join(f"{venue.value}: {error}" for venue, error in errors.items())
            ) from last_error

        selected = select_best(list(quotes.values()))
        decision = RoutingDecision(quotes=quotes, selected=selected, errors=errors)

        self.total_orders_routed += 1
        self.routes_by_venue[selected.venue] = self.routes_by_venue.get(selected.venue, 0) + 1
        self._log_decision(order, decision)
        return decision

    async def _fetch_quote(self, venue: Venue, order: Order) -> Quote:
        return await with_retry(
            lambda: self.quote_source.get_quote(venue, order.token_in, order.token_out,
                                                order.amount_in),
            max_attempts=self.config.max_retries,
            base_delay=self.config.retry_delay_seconds,
            timeout=self.config.quote_timeout_seconds,
            name=f"{venue.value} quote"
        )

    def _log_decision(self, order: Order, decision: RoutingDecision) -> None:
        summary = ", ".join(
            f"{venue.value}: out={quote.output_amount:.6f} price={quote.price:.6f} "
            f"fee={quote.fee * 100:.2f}% impact={quote.price_impact:.3f}%"
            for venue, quote in decision.quotes.items()
        )
        outputs = sorted((q.output_amount for q in decision.quotes.values()), reverse=True)
        margin = outputs[0] - outputs[1] if len(outputs) > 1 else 0.0
        logger.info(f"Routing decision for {order.order_id}: [{summary}] -> "
                    f"{decision.selected.venue.value} (better by {margin:.6f})")

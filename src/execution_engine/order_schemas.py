"""
Order Schemas - Data structures for order execution

Orders, venue quotes, execution results and the status events that form
each order's audit trail. Replaying an order's events in sequence order
rebuilds the order record exactly.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, Iterable
from datetime import datetime, timezone
import uuid


def utc_now() -> datetime:
    """Current time in UTC"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from storage"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class OrderType(Enum):
    """Order types accepted by the API (only MARKET executes today)"""
    MARKET = "market"
    LIMIT = "limit"
    SNIPER = "sniper"


class Venue(Enum):
    """Liquidity sources"""
    RAYDIUM = "raydium"
    METEORA = "meteora"


class OrderStatus(Enum):
    """Order lifecycle status"""
    PENDING = "pending"           # Admitted, waiting for a worker
    ROUTING = "routing"           # Comparing venue quotes
    BUILDING = "building"         # Validating and building the swap
    SUBMITTED = "submitted"       # Swap sent to the venue
    CONFIRMED = "confirmed"       # Swap executed
    FAILED = "failed"             # Gave up

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.CONFIRMED, OrderStatus.FAILED)

    def can_transition_to(self, new_status: "OrderStatus") -> bool:
        """Check a transition against the lifecycle graph"""
        if self.is_terminal:
            return False
        if new_status in (OrderStatus.FAILED, OrderStatus.PENDING):
            # Failure is reachable from anywhere; PENDING starts a retry attempt
            return True
        if new_status == self == OrderStatus.ROUTING:
            # Routing snapshot does not advance the status
            return True
        return new_status in _NEXT_STATUS.get(self, ())


_NEXT_STATUS = {
    OrderStatus.PENDING: (OrderStatus.ROUTING,),
    OrderStatus.ROUTING: (OrderStatus.BUILDING,),
    OrderStatus.BUILDING: (OrderStatus.SUBMITTED,),
    OrderStatus.SUBMITTED: (OrderStatus.CONFIRMED,),
}


@dataclass
class Quote:
    """A venue's proposed terms for swapping amount_in"""

    venue: Venue
    price: float                # Effective price after impact
    fee: float                  # Fee fraction (0.003 = 0.3%)
    output_amount: float        # Output after fee and price impact
    price_impact: float         # Price impact in percent

    def to_dict(self) -> Dict[str, Any]:
        return {
            'venue': self.venue.value,
            'price': self.price,
            'fee': self.fee,
            'output_amount': self.output_amount,
            'price_impact': self.price_impact
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Quote":
        return cls(
            venue=Venue(data['venue']),
            price=data['price'],
            fee=data['fee'],
            output_amount=data['output_amount'],
            price_impact=data['price_impact']
        )


@dataclass
class RoutingDecision:
    """Quotes from every venue plus the one selected"""

    quotes: Dict[Venue, Quote]
    selected: Quote
    errors: Dict[Venue, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {
            venue.value: quote.to_dict() for venue, quote in self.quotes.items()
        }
        for venue, error in self.errors.items():
            snapshot[venue.value] = {'error': error}
        snapshot['selected'] = self.selected.venue.value
        return snapshot


@dataclass
class ExecutionResult:
    """Outcome of a successful swap"""

    tx_hash: str
    executed_price: float
    executed_amount: float
    venue: Venue

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tx_hash': self.tx_hash,
            'executed_price': self.executed_price,
            'executed_amount': self.executed_amount,
            'venue': self.venue.value
        }


@dataclass
class StatusEvent:
    """
    One entry in an order's audit trail

    Sequence numbers are assigned by the order store when the event is
    persisted and are strictly increasing per order.
    """

    order_id: str
    status: OrderStatus
    timestamp: datetime = field(default_factory=utc_now)
    sequence: Optional[int] = None
    retry_count: int = 0

    # Status dependent payload
    routing: Optional[Dict[str, Any]] = None      # ROUTING snapshot
    tx_hash: Optional[str] = None                 # CONFIRMED
    executed_price: Optional[float] = None
    executed_amount: Optional[float] = None
    venue: Optional[Venue] = None
    error: Optional[str] = None                   # FAILED
    message: Optional[str] = None                 # Informational text
    order: Optional[Dict[str, Any]] = None        # Admission snapshot

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation; optional fields are omitted when unset"""
        data: Dict[str, Any] = {
            'order_id': self.order_id,
            'status': self.status.value,
            'timestamp': self.timestamp.isoformat(),
            'sequence': self.sequence,
            'retry_count': self.retry_count
        }
        optional = {
            'routing': self.routing,
            'tx_hash': self.tx_hash,
            'executed_price': self.executed_price,
            'executed_amount': self.executed_amount,
            'venue': self.venue.value if self.venue else None,
            'error': self.error,
            'message': self.message,
            'order': self.order
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data


@dataclass
class Order:
    """
    Swap order and its execution state

    Identity and request fields never change after admission; everything
    below `status` is owned by the order executor.
    """

    order_id: str
    order_type: OrderType
    token_in: str
    token_out: str
    amount_in: float
    slippage: float = 0.01

    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = None
    updated_at: datetime = None

    # Execution result
    tx_hash: Optional[str] = None
    executed_price: Optional[float] = None
    executed_amount: Optional[float] = None
    venue: Optional[Venue] = None

    error: Optional[str] = None
    retry_count: int = 0

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @classmethod
    def generate_order_id(cls) -> str:
        """Generate unique order ID"""
        return str(uuid.uuid4())

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def minimum_output(self, quoted_output: float) -> float:
        """Lowest output this order accepts for a quoted output"""
        return quoted_output * (1 - self.slippage)

    def admission_snapshot(self) -> Dict[str, Any]:
        """Request fields recorded on the creation event"""
        return {
            'order_type': self.order_type.value,
            'token_in': self.token_in,
            'token_out': self.token_out,
            'amount_in': self.amount_in,
            'slippage': self.slippage
        }

    def apply_event(self, event: StatusEvent) -> None:
        """Fold one status event into this order"""
        self.status = event.status
        self.updated_at = event.timestamp
        self.retry_count = event.retry_count

        if event.tx_hash is not None:
            self.tx_hash = event.tx_hash
        if event.executed_price is not None:
            self.executed_price = event.executed_price
        if event.executed_amount is not None:
            self.executed_amount = event.executed_amount
        if event.venue is not None:
            self.venue = event.venue
        if event.error is not None:
            self.error = event.error

    @classmethod
    def from_history(cls, events: Iterable[StatusEvent]) -> "Order":
        """
        Rebuild an order by replaying its status events

        The first event must carry the admission snapshot.
        """
        ordered: List[StatusEvent] = sorted(events, key=lambda e: e.sequence or 0)
        if not ordered or ordered[0].order is None:
            raise ValueError("History must start with the admission event")

        first = ordered[0]
        snapshot = first.order
        order = cls(
            order_id=first.order_id,
            order_type=OrderType(snapshot['order_type']),
            token_in=snapshot['token_in'],
            token_out=snapshot['token_out'],
            amount_in=snapshot['amount_in'],
            slippage=snapshot['slippage'],
            created_at=first.timestamp
        )
        for event in ordered:
            order.apply_event(event)
        return order

    def to_dict(self) -> Dict[str, Any]:
        """Convert order to dictionary for serialization"""
        return {
            'order_id': self.order_id,
            'type': self.order_type.value,
            'token_in': self.token_in,
            'token_out': self.token_out,
            'amount_in': self.amount_in,
            'slippage': self.slippage,
            'status': self.status.value,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'tx_hash': self.tx_hash,
            'executed_price': self.executed_price,
            'executed_amount': self.executed_amount,
            'venue': self.venue.value if self.venue else None,
            'error': self.error,
            'retry_count': self.retry_count
        }

    def __str__(self) -> str:
        """String representation for logging"""
        return (f"Order({self.order_id}: {self.amount_in} {self.token_in} -> {self.token_out} "
                f"@ {self.order_type.value} - {self.status.value})")


# Largest doubling applied to a job backoff
MAX_BACKOFF_EXPONENT = 30


class JobState(Enum):
    """Scheduling state of a job"""
    WAITING = "waiting"       # Ready, or delayed until available_at
    ACTIVE = "active"         # Claimed by a worker
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """
    Scheduling envelope for one order's pipeline

    attempts_made counts claims, so it is 1 while the first attempt runs.
    """

    job_id: str
    order_id: str
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 4                 # First attempt + 3 retries
    backoff_delay: float = 1.0            # Seconds before the first retry
    available_at: datetime = None
    created_at: datetime = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()
        if self.available_at is None:
            self.available_at = self.created_at

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts

    def next_backoff(self, max_delay: Optional[float] = None) -> float:
        """Delay before the next attempt: backoff, 2x backoff, 4x backoff, ... up to max_delay"""
        exponent = min(max(self.attempts_made - 1, 0), MAX_BACKOFF_EXPONENT)
        delay = self.backoff_delay * (2 ** exponent)
        if max_delay is not None:
            delay = min(delay, max_delay)
        return delay

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'order_id': self.order_id,
            'state': self.state.value,
            'attempts_made': self.attempts_made,
            'max_attempts': self.max_attempts,
            'backoff_delay': self.backoff_delay,
            'available_at': _iso(self.available_at),
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'finished_at': _iso(self.finished_at),
            'last_error': self.last_error
        }

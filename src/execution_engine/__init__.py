"""
Execution Engine Module

Order execution pipeline for swap orders routed across DEX venues.
Storage and transport are injected, so this package has no I/O of its own
beyond the venue adapters.

Core Components:
- ExecutionRouter / select_best: Quote every venue, pick the best net output
- with_retry: Bounded exponential-backoff retry for async calls
- OrderExecutor: Per-order state machine (PENDING -> ... -> CONFIRMED/FAILED)
- OrderQueue: Bounded, rate-limited, persistent job processing
- StatusFanout: Per-order status streaming to subscribers
- MockDexRouter: Simulated Raydium/Meteora venues
"""

from .order_schemas import (
    Order, OrderStatus, OrderType, Venue, Quote, RoutingDecision,
    ExecutionResult, StatusEvent, Job, JobState
)
from .exceptions import (
    ExecutionError, TransientError, PermanentError, InfrastructureError,
    QuoteError, RoutingError, SwapExecutionError, OperationTimeoutError,
    SlippageExceededError, OrderNotFoundError, OrderValidationError,
    UnsupportedOrderTypeError, InvalidStatusTransitionError,
    OrderAlreadyTerminalError, StoreUnavailableError, QueueClosedError
)
from .retry_policy import with_retry, is_retryable, should_retry_job
from .dex_adapter import QuoteSource, SwapExecutor, MockDexRouter, DexConfig
from .execution_router import ExecutionRouter, RoutingConfig, select_best
from .order_executor import OrderExecutor, ExecutorConfig
from .rate_limiter import TokenBucketLimiter
from .order_queue import OrderQueue, QueueConfig
from .status_fanout import StatusFanout, StatusTransport, Subscription

__all__ = [
    # Order schemas
    'Order',
    'OrderStatus',
    'OrderType',
    'Venue',
    'Quote',
    'RoutingDecision',
    'ExecutionResult',
    'StatusEvent',
    'Job',
    'JobState',

    # Errors
    'ExecutionError',
    'TransientError',
    'PermanentError',
    'InfrastructureError',
    'QuoteError',
    'RoutingError',
    'SwapExecutionError',
    'OperationTimeoutError',
    'SlippageExceededError',
    'OrderNotFoundError',
    'OrderValidationError',
    'UnsupportedOrderTypeError',
    'InvalidStatusTransitionError',
    'OrderAlreadyTerminalError',
    'StoreUnavailableError',
    'QueueClosedError',

    # Core components
    'with_retry',
    'is_retryable',
    'should_retry_job',
    'QuoteSource',
    'SwapExecutor',
    'MockDexRouter',
    'DexConfig',
    'ExecutionRouter',
    'RoutingConfig',
    'select_best',
    'OrderExecutor',
    'ExecutorConfig',
    'TokenBucketLimiter',
    'OrderQueue',
    'QueueConfig',
    'StatusFanout',
    'StatusTransport',
    'Subscription'
]

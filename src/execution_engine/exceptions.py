"""Exception types shared by the execution pipeline."""

from typing import Optional


class ExecutionError(Exception):
    """Base exception for order execution errors"""
    pass


class TransientError(ExecutionError):
    """Failure that may succeed when retried"""
    pass


class PermanentError(ExecutionError):
    """Failure that retrying cannot fix"""
    pass


class InfrastructureError(ExecutionError):
    """Storage or queue backend failure"""
    pass


# Transient

class QuoteError(TransientError):
    """A venue failed to return a quote"""

    def __init__(self, venue: str, message: str):
        super().__init__(f"{venue} quote failed: {message}")
        self.venue = venue


class RoutingError(TransientError):
    """No venue returned a usable quote"""
    pass


class SwapExecutionError(TransientError):
    """The swap could not be executed"""
    pass


class OperationTimeoutError(TransientError):
    """A single attempt ran past its timeout"""

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:.2f}s")
        self.operation = operation
        self.timeout = timeout


# Permanent

class SlippageExceededError(PermanentError):
    """Output fell below the order's slippage tolerance"""

    def __init__(self, message: str = "Slippage tolerance exceeded",
                 expected: Optional[float] = None, minimum: Optional[float] = None):
        super().__init__(message)
        self.expected = expected
        self.minimum = minimum


class OrderNotFoundError(PermanentError):
    """Order does not exist"""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class OrderValidationError(PermanentError):
    """Order request failed validation"""
    pass


class UnsupportedOrderTypeError(OrderValidationError):
    """Order type is not executable"""
    pass


class InvalidStatusTransitionError(PermanentError):
    """Status change not allowed by the order lifecycle"""
    pass


class OrderAlreadyTerminalError(InvalidStatusTransitionError):
    """Order is already CONFIRMED or FAILED"""
    pass


# Infrastructure

class StoreUnavailableError(InfrastructureError):
    """Database operation failed"""
    pass


class QueueClosedError(InfrastructureError):
    """Queue is shutting down and no longer accepts jobs"""
    pass

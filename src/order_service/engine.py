"""
Execution Engine - process-level orchestration of the order pipeline

Wires the pieces together:
- Database, order store and job store
- Venue adapters (simulated DEX unless real ones are injected)
- Router, order executor and status fan-out
- Order queue driving the executor

and is the admission boundary: orders are validated, stored as PENDING and
queued here. Configuration comes from environment variables (.env supported).
"""

import math
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from dotenv import load_dotenv
from loguru import logger

from ..execution_engine.order_schemas import (
    Order, OrderType, StatusEvent, Job, utc_now
)
from ..execution_engine.exceptions import (
    OrderNotFoundError, OrderValidationError, UnsupportedOrderTypeError, QueueClosedError
)
from ..execution_engine.dex_adapter import DexConfig, MockDexRouter, QuoteSource, SwapExecutor
from ..execution_engine.execution_router import ExecutionRouter, RoutingConfig
from ..execution_engine.order_executor import OrderExecutor, ExecutorConfig
from ..execution_engine.order_queue import OrderQueue, QueueConfig
from ..execution_engine.status_fanout import StatusFanout
from ..persistence import Database, OrderStore, JobStore


SUPPORTED_ORDER_TYPES = (OrderType.MARKET,)


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = _env_str(name, None)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = _env_str(name, None)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = _env_str(name, None)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


@dataclass
class ExecutionConfig:
    """Configuration for the Execution Engine"""

    # Component configurations
    dex_config: DexConfig = field(default_factory=DexConfig)
    routing_config: RoutingConfig = field(default_factory=RoutingConfig)
    executor_config: ExecutorConfig = field(default_factory=ExecutorConfig)
    queue_config: QueueConfig = field(default_factory=QueueConfig)

    # Storage
    database_url: str = "sqlite:///orders.db"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 3000

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ExecutionConfig":
        """
        Build configuration from environment variables

        Unset variables keep their defaults; malformed values raise ValueError.
        """
        load_dotenv(env_file)

        max_retries = _env_int("MAX_RETRIES", 3)
        call_retry_delay = _env_float("CALL_RETRY_DELAY_SECONDS", 1.0)

        config = cls(
            dex_config=DexConfig(
                raydium_latency_ms=_env_float("RAYDIUM_LATENCY_MS", 200.0),
                meteora_latency_ms=_env_float("METEORA_LATENCY_MS", 200.0),
                execution_latency_ms=_env_float("EXECUTION_LATENCY_MS", 2500.0),
                swap_failure_rate=_env_float("SWAP_FAILURE_RATE", 0.05)
            ),
            routing_config=RoutingConfig(
                max_retries=max_retries,
                retry_delay_seconds=call_retry_delay,
                quote_timeout_seconds=_env_float("QUOTE_TIMEOUT_SECONDS", 5.0)
            ),
            executor_config=ExecutorConfig(
                max_retries=max_retries,
                retry_delay_seconds=call_retry_delay,
                swap_timeout_seconds=_env_float("SWAP_TIMEOUT_SECONDS", 10.0),
                verify_execution_slippage=_env_bool("VERIFY_EXECUTION_SLIPPAGE", False)
            ),
            queue_config=QueueConfig(
                concurrency=_env_int("MAX_CONCURRENT_ORDERS", 10),
                rate_limit_max=_env_int("ORDERS_PER_MINUTE", 100),
                rate_limit_period=60.0,
                max_retries=max_retries,
                backoff_delay_seconds=_env_float("JOB_BACKOFF_SECONDS", 1.0),
                max_backoff_seconds=_env_float("JOB_MAX_BACKOFF_SECONDS", 300.0),
                completed_max_age_seconds=_env_float("COMPLETED_JOB_MAX_AGE_SECONDS", 3600.0),
                completed_max_count=_env_int("COMPLETED_JOB_MAX_COUNT", 1000),
                failed_max_age_seconds=_env_float("FAILED_JOB_MAX_AGE_SECONDS", 86400.0),
                cleanup_interval_seconds=_env_float("JOB_CLEANUP_INTERVAL_SECONDS", 60.0),
                shutdown_timeout_seconds=_env_float("SHUTDOWN_TIMEOUT_SECONDS", 30.0)
            ),
            database_url=_env_str("DATABASE_URL", "sqlite:///orders.db"),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            log_file=_env_str("LOG_FILE", None),
            host=_env_str("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3000)
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Reject settings the pipeline cannot run with"""
        if self.queue_config.concurrency <= 0:
            raise ValueError("MAX_CONCURRENT_ORDERS must be positive")
        if self.queue_config.rate_limit_max <= 0:
            raise ValueError("ORDERS_PER_MINUTE must be positive")
        if self.queue_config.max_retries < 0:
            raise ValueError("MAX_RETRIES must not be negative")
        if not 0.0 <= self.dex_config.swap_failure_rate <= 1.0:
            raise ValueError("SWAP_FAILURE_RATE must be between 0 and 1")
        if not 0 < self.port < 65536:
            raise ValueError("PORT must be a valid TCP port")


class ExecutionEngine:
    """
    Main execution engine

    Owns one instance of every pipeline component. The transport layer
    talks only to this class and to its `fanout`.
    """

    def __init__(self, config: Optional[ExecutionConfig] = None,
                 quote_source: Optional[QuoteSource] = None,
                 swap_executor: Optional[SwapExecutor] = None,
                 database: Optional[Database] = None):
        self.config = config or ExecutionConfig()

        # Storage
        self._owns_database = database is None
        self.database = database or Database(self.config.database_url)
        self.order_store = OrderStore(self.database)
        self.job_store = JobStore(self.database)

        # Venues
        if quote_source is None or swap_executor is None:
            dex = MockDexRouter(self.config.dex_config)
            quote_source = quote_source or dex
            swap_executor = swap_executor or dex
        self.quote_source = quote_source
        self.swap_executor = swap_executor

        # Pipeline
        self.fanout = StatusFanout()
        self.router = ExecutionRouter(self.quote_source, self.config.routing_config)
        self.executor = OrderExecutor(
            order_store=self.order_store,
            router=self.router,
            swap_executor=self.swap_executor,
            publisher=self.fanout,
            config=self.config.executor_config
        )
        self.queue = OrderQueue(self.job_store, self._process_job, self.config.queue_config)

        # Engine state
        self.running = False
        self.start_time: Optional[datetime] = None
        self.total_orders_submitted = 0
        self.total_orders_rejected = 0

    async def start(self) -> None:
        """Start processing queued orders"""
        if self.running:
            return
        logger.info("Starting Execution Engine...")
        await self.queue.start()
        self.running = True
        self.start_time = utc_now()
        logger.info(f"Execution Engine started (venues: "
                    f"{', '.join(v.value for v in self.router.venues)})")

    async def stop(self) -> None:
        """Drain the queue, disconnect subscribers and release storage"""
        logger.info("Stopping Execution Engine...")
        self.running = False
        await self.queue.close()
        await self.fanout.close_all()
        if self._owns_database:
            self.database.dispose()

        summary = self.executor.get_performance_summary()
        logger.info(f"Execution Engine stopped: {self.total_orders_submitted} submitted, "
                    f"{summary['orders_confirmed']} confirmed, {summary['orders_failed']} failed")

    async def submit_order(self, order_type: Union[str, OrderType], token_in: str,
                           token_out: str, amount_in: float, slippage: float = 0.01) -> Order:
        """
        Admit an order: validate, store as PENDING and queue it

        Raises:
            UnsupportedOrderTypeError: order type is not executable yet
            OrderValidationError: malformed request
            QueueClosedError: the engine is shutting down
        """
        try:
            order = self._build_order(order_type, token_in, token_out, amount_in, slippage)
        except OrderValidationError as e:
            self.total_orders_rejected += 1
            logger.warning(f"Order rejected: {e}")
            raise

        if not self.queue.accepting:
            raise QueueClosedError("Engine is shutting down; not accepting orders")

        # Order row and job row commit together or not at all
        with self.database.session() as session:
            self.order_store.create(order, session=session)
            await self.queue.enqueue(order.order_id, session=session)
        self.total_orders_submitted += 1

        logger.info(f"Order admitted: {order}")
        return order

    def get_order(self, order_id: str) -> Order:
        order = self.order_store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def get_history(self, order_id: str) -> List[StatusEvent]:
        if self.order_store.get(order_id) is None:
            raise OrderNotFoundError(order_id)
        return self.order_store.list_history(order_id)

    def list_orders(self, limit: int = 100) -> List[Order]:
        return self.order_store.list_recent(limit)

    async def get_metrics(self) -> Dict[str, int]:
        """Queue counts plus live status subscribers"""
        metrics = await self.queue.get_metrics()
        metrics['subscribers'] = self.fanout.active_subscriber_count()
        return metrics

    def get_performance_summary(self) -> Dict[str, Any]:
        uptime = (utc_now() - self.start_time).total_seconds() if self.start_time else 0.0
        return {
            'running': self.running,
            'uptime_seconds': uptime,
            'orders_submitted': self.total_orders_submitted,
            'orders_rejected': self.total_orders_rejected,
            'queue': {
                'jobs_started': self.queue.jobs_started,
                'jobs_completed': self.queue.jobs_completed,
                'jobs_failed': self.queue.jobs_failed,
                'jobs_retried': self.queue.jobs_retried,
                'rate_limiter': self.queue.limiter.stats()
            },
            'executor': self.executor.get_performance_summary()
        }

    async def _process_job(self, job: Job) -> Order:
        return await self.executor.execute_order(job.order_id, job)

    @staticmethod
    def _build_order(order_type: Union[str, OrderType], token_in: str, token_out: str,
                     amount_in: float, slippage: float) -> Order:
        if not isinstance(order_type, OrderType):
            try:
                order_type = OrderType(str(order_type).lower())
            except ValueError:
                raise OrderValidationError(f"Unknown order type: {order_type}")
        if order_type not in SUPPORTED_ORDER_TYPES:
            raise UnsupportedOrderTypeError(
                f"Only market orders are currently supported (got {order_type.value})"
            )

        token_in = (token_in or "").strip()
        token_out = (token_out or "").strip()
        if not token_in or not token_out:
            raise OrderValidationError("tokenIn and tokenOut are required")
        if token_in == token_out:
            raise OrderValidationError("tokenIn and tokenOut must differ")

        if amount_in is None or not math.isfinite(amount_in) or amount_in <= 0:
            raise OrderValidationError("amountIn must be a positive number")
        if slippage is None or not math.isfinite(slippage) or not 0.0 <= slippage <= 1.0:
            raise OrderValidationError("slippage must be between 0 and 1")

        return Order(
            order_id=Order.generate_order_id(),
            order_type=order_type,
            token_in=token_in,
            token_out=token_out,
            amount_in=float(amount_in),
            slippage=float(slippage)
        )

"""
Order Store for orders and their status history

Orders are updated in place; every status change is also appended to the
history log with a per-order sequence number, so an order's history
replays to its current row.
"""

from datetime import datetime
from typing import List, Optional

from loguru import logger
from sqlalchemy import func
from sqlalchemy.orm import Session

from .database import Database
from .models import OrderRecord, StatusHistoryRecord
from ..execution_engine.order_schemas import (
    Order, OrderStatus, OrderType, StatusEvent, ExecutionResult, Venue, as_utc, utc_now
)
from ..execution_engine.exceptions import (
    OrderNotFoundError, OrderAlreadyTerminalError, OrderValidationError
)


class OrderStore:
    """
    Storage and retrieval of orders and status events
    """

    def __init__(self, database: Database):
        self.database = database

    def create(self, order: Order, session: Optional[Session] = None) -> Order:
        """
        Insert a new order together with its admission event

        The admission event is a PENDING event carrying the order's request
        fields and timestamped with the order's creation time. Pass `session`
        to make the insert part of a larger transaction.
        """
        admission = StatusEvent(
            order_id=order.order_id,
            status=OrderStatus.PENDING,
            timestamp=order.created_at,
            retry_count=order.retry_count,
            order=order.admission_snapshot()
        )

        with self.database.session(session) as session:
            if session.get(OrderRecord, order.order_id) is not None:
                raise OrderValidationError(f"Order {order.order_id} already exists")

            session.add(OrderRecord(
                order_id=order.order_id,
                type=order.order_type.value,
                token_in=order.token_in,
                token_out=order.token_out,
                amount_in=order.amount_in,
                slippage=order.slippage,
                status=order.status.value,
                created_at=order.created_at,
                updated_at=order.updated_at,
                retry_count=order.retry_count
            ))
            session.flush()
            self._insert_event(session, admission)

        logger.info(f"Stored order {order.order_id}")
        return order

    def get(self, order_id: str) -> Optional[Order]:
        """Get order by ID, None if unknown"""
        with self.database.session() as session:
            record = session.get(OrderRecord, order_id)
            return self._to_order(record) if record else None

    def update_status(
        self,
        order_id: str,
        status: OrderStatus,
        result: Optional[ExecutionResult] = None,
        error: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> None:
        """
        Set an order's status and, when given, its result fields or error

        Fields left as None keep their stored values.
        """
        event = StatusEvent(order_id=order_id, status=status,
                            timestamp=timestamp or utc_now(), error=error)
        if result is not None:
            event.tx_hash = result.tx_hash
            event.executed_price = result.executed_price
            event.executed_amount = result.executed_amount
            event.venue = result.venue

        with self.database.session() as session:
            record = self._lock_mutable(session, order_id)
            event.retry_count = record.retry_count
            self._apply_event(record, event)

    def increment_retry_count(self, order_id: str) -> int:
        """Bump the retry counter and return the new value"""
        with self.database.session() as session:
            record = self._lock_mutable(session, order_id)
            record.retry_count = (record.retry_count or 0) + 1
            return record.retry_count

    def append_history(self, event: StatusEvent) -> StatusEvent:
        """Append an event to the order's history and assign its sequence number"""
        with self.database.session() as session:
            if session.get(OrderRecord, event.order_id) is None:
                raise OrderNotFoundError(event.order_id)
            return self._insert_event(session, event)

    def record_event(self, event: StatusEvent) -> StatusEvent:
        """
        Apply an event to the order row and append it to history atomically

        Raises:
            OrderNotFoundError: unknown order
            OrderAlreadyTerminalError: order is CONFIRMED or FAILED
        """
        with self.database.session() as session:
            record = self._lock_mutable(session, event.order_id)
            self._apply_event(record, event)
            return self._insert_event(session, event)

    def list_history(self, order_id: str) -> List[StatusEvent]:
        """Status events for an order in sequence order"""
        with self.database.session() as session:
            rows = (session.query(StatusHistoryRecord)
                    .filter(StatusHistoryRecord.order_id == order_id)
                    .order_by(StatusHistoryRecord.sequence.asc())
                    .all())
            return [self._to_event(row) for row in rows]

    def list_recent(self, limit: int = 100) -> List[Order]:
        """Most recently created orders first"""
        with self.database.session() as session:
            rows = (session.query(OrderRecord)
                    .order_by(OrderRecord.created_at.desc())
                    .limit(limit)
                    .all())
            return [self._to_order(row) for row in rows]

    def _lock_mutable(self, session: Session, order_id: str) -> OrderRecord:
        record = (session.query(OrderRecord)
                  .filter(OrderRecord.order_id == order_id)
                  .with_for_update()
                  .one_or_none())
        if record is None:
            raise OrderNotFoundError(order_id)
        if OrderStatus(record.status).is_terminal:
            raise OrderAlreadyTerminalError(
                f"Order {order_id} is already {record.status}; no further updates allowed"
            )
        return record

    @staticmethod
    def _apply_event(record: OrderRecord, event: StatusEvent) -> None:
        # Same folding rules as Order.apply_event
        record.status = event.status.value
        record.updated_at = event.timestamp
        record.retry_count = event.retry_count

        if event.tx_hash is not None:
            record.tx_hash = event.tx_hash
        if event.executed_price is not None:
            record.executed_price = event.executed_price
        if event.executed_amount is not None:
            record.executed_amount = event.executed_amount
        if event.venue is not None:
            record.venue = event.venue.value
        if event.error is not None:
            record.error = event.error

    @staticmethod
    def _insert_event(session: Session, event: StatusEvent) -> StatusEvent:
        last_sequence = (session.query(func.max(StatusHistoryRecord.sequence))
                         .filter(StatusHistoryRecord.order_id == event.order_id)
                         .scalar())
        event.sequence = (last_sequence or 0) + 1

        session.add(StatusHistoryRecord(
            order_id=event.order_id,
            sequence=event.sequence,
            status=event.status.value,
            timestamp=event.timestamp,
            retry_count=event.retry_count,
            tx_hash=event.tx_hash,
            executed_price=event.executed_price,
            executed_amount=event.executed_amount,
            venue=event.venue.value if event.venue else None,
            error=event.error,
            message=event.message,
            routing_data=event.routing,
            order_data=event.order
        ))
        return event

    @staticmethod
    def _to_order(record: OrderRecord) -> Order:
        return Order(
            order_id=record.order_id,
            order_type=OrderType(record.type),
            token_in=record.token_in,
            token_out=record.token_out,
            amount_in=record.amount_in,
            slippage=record.slippage,
            status=OrderStatus(record.status),
            created_at=as_utc(record.created_at),
            updated_at=as_utc(record.updated_at),
            tx_hash=record.tx_hash,
            executed_price=record.executed_price,
            executed_amount=record.executed_amount,
            venue=Venue(record.venue) if record.venue else None,
            error=record.error,
            retry_count=record.retry_count or 0
        )

    @staticmethod
    def _to_event(row: StatusHistoryRecord) -> StatusEvent:
        return StatusEvent(
            order_id=row.order_id,
            status=OrderStatus(row.status),
            timestamp=as_utc(row.timestamp),
            sequence=row.sequence,
            retry_count=row.retry_count or 0,
            routing=row.routing_data,
            tx_hash=row.tx_hash,
            executed_price=row.executed_price,
            executed_amount=row.executed_amount,
            venue=Venue(row.venue) if row.venue else None,
            error=row.error,
            message=row.message,
            order=row.order_data
        )

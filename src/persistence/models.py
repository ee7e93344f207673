"""
Database models for orders, their status history and the job queue
"""

from sqlalchemy import (
    Column, String, Float, DateTime, Text, Integer, JSON, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class OrderRecord(Base):
    """Current state of an order"""
    __tablename__ = 'orders'

    order_id = Column(String(36), primary_key=True)
    type = Column(String(20), nullable=False)
    token_in = Column(String(100), nullable=False)
    token_out = Column(String(100), nullable=False)
    amount_in = Column(Float, nullable=False)
    slippage = Column(Float, nullable=False, default=0.01)
    status = Column(String(20), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    # Execution result
    tx_hash = Column(String(100))
    executed_price = Column(Float)
    executed_amount = Column(Float)
    venue = Column(String(20))

    error = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)


class StatusHistoryRecord(Base):
    """Append-only status event log"""
    __tablename__ = 'order_status_history'
    __table_args__ = (
        UniqueConstraint('order_id', 'sequence', name='uq_history_order_sequence'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey('orders.order_id'), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    retry_count = Column(Integer, nullable=False, default=0)

    tx_hash = Column(String(100))
    executed_price = Column(Float)
    executed_amount = Column(Float)
    venue = Column(String(20))
    error = Column(Text)
    message = Column(Text)

    routing_data = Column(JSON)    # Venue quotes and selection
    order_data = Column(JSON)      # Admission snapshot


class JobRecord(Base):
    """Durable queue entry; one per order"""
    __tablename__ = 'jobs'
    __table_args__ = (
        Index('ix_jobs_state_available', 'state', 'available_at'),
    )

    job_id = Column(String(36), primary_key=True)
    order_id = Column(String(36), nullable=False)
    state = Column(String(16), nullable=False)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    backoff_delay = Column(Float, nullable=False)
    available_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    last_error = Column(Text)

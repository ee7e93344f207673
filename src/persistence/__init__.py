"""
Persistence Module

SQLAlchemy-backed storage for orders, their status history and the job queue.
"""

from .database import Database
from .order_store import OrderStore
from .job_store import JobStore

__all__ = [
    'Database',
    'OrderStore',
    'JobStore'
]

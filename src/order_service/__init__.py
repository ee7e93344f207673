"""
Order Service Module

Process wiring and the HTTP/WebSocket transport for the execution engine.
"""

from .engine import ExecutionEngine, ExecutionConfig
from .app import create_app

__all__ = [
    'ExecutionEngine',
    'ExecutionConfig',
    'create_app'
]

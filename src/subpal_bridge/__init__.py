"""
subpal-bridge — cross-context messaging for the SubPal subtitle extension.

Correlated request/response over background, mediator and page channels,
plus an offline-tolerant queue for votes and translation suggestions.
"""

from subpal_bridge.connection import ConnectionManager
from subpal_bridge.context import MediatorContext
from subpal_bridge.correlation import CorrelationEngine
from subpal_bridge.errors import (
    BridgeError,
    ValidationError,
    DuplicateError,
    TimeoutError,
    ConnectionLostError,
    QueueFullError,
    MaxRetriesExceededError,
    NotFoundError,
    RemoteError,
    ApiError,
)
from subpal_bridge.events import EventBus
from subpal_bridge.queue import SubmissionQueueManager
from subpal_bridge.settings import BridgeSettings, MemoryConfigSource
from subpal_bridge.transport.base import ConnectionState, TransportChannel

__version__ = "0.1.0"
__all__ = [
    "ConnectionManager",
    "MediatorContext",
    "CorrelationEngine",
    "SubmissionQueueManager",
    "EventBus",
    "BridgeSettings",
    "MemoryConfigSource",
    "ConnectionState",
    "TransportChannel",
    "BridgeError",
    "ValidationError",
    "DuplicateError",
    "TimeoutError",
    "ConnectionLostError",
    "QueueFullError",
    "MaxRetriesExceededError",
    "NotFoundError",
    "RemoteError",
    "ApiError",
]

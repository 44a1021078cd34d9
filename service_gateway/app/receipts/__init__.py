"""
Receipt and usage ingestion queue.
"""

from .durable_queue import Durability, DurableQueue, EnqueueResult, QueueItem
from .drainer import QueueDrainer
from .settlement import HttpSettlementClient, LoggingSettlement

__all__ = [
    "Durability",
    "DurableQueue",
    "EnqueueResult",
    "HttpSettlementClient",
    "LoggingSettlement",
    "QueueDrainer",
    "QueueItem",
]

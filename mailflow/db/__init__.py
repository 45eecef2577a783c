"""Database module for mailflow."""

from .models import (
    ClassificationResult,
    Classifier,
    Email,
    EmailInput,
    QueueItem,
    QueueStats,
    QueueStatus,
)
from .queue_storage import MemoryQueueStore, PostgresQueueStore, QueueStore

__all__ = [
    "ClassificationResult",
    "Classifier",
    "Email",
    "EmailInput",
    "QueueItem",
    "QueueStats",
    "QueueStatus",
    "MemoryQueueStore",
    "PostgresQueueStore",
    "QueueStore",
]

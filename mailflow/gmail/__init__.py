"""Gmail ingestion: API client and the queue-backed background sync."""

from .background_sync import BackgroundSyncManager, SyncOptions
from .client import GmailApiError, GmailClient, MessagePage
from .html_to_text import html_to_text

__all__ = [
    "BackgroundSyncManager",
    "SyncOptions",
    "GmailApiError",
    "GmailClient",
    "MessagePage",
    "html_to_text",
]

"""Pydantic models for queue rows, fetched emails and classification."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueStatus(str, Enum):
    """Sync queue item lifecycle status."""

    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    FAILED = "failed"


# Failures an item may accumulate before it is dropped from the queue
MAX_ITEM_RETRIES = 5


class QueueItem(BaseModel):
    """One unit of ingestion work, keyed by the remote message id."""

    natural_id: str
    owner_id: str
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class QueueStats(BaseModel):
    """Row counts per status for one owner."""

    pending: int = 0
    claimed: int = 0
    done: int = 0
    failed: int = 0
    total: int = 0


class MarkFailedResult(BaseModel):
    """Outcome of recording a failed attempt for a queue item."""

    permanently_dropped: bool
    retry_count: int


class Email(BaseModel):
    """A fetched Gmail message ready to be stored."""

    gmail_id: str
    thread_id: str
    user_id: Optional[str] = None
    subject: str = ""
    sender: str = ""
    recipient: str = ""
    snippet: str = ""
    body: str = ""
    date: datetime = Field(default_factory=utcnow)
    labels: List[str] = Field(default_factory=list)


class EmailInput(BaseModel):
    """The parts of an email needed to build a classification prompt."""

    id: str
    subject: str = ""
    sender: str = ""
    snippet: str = ""
    body: str = ""
    date: datetime = Field(default_factory=utcnow)


class Classifier(BaseModel):
    """A user-defined category an email can be matched to."""

    id: str
    name: str
    description: str
    label_name: str
    priority: int = Field(default=0, ge=0, le=10)


class RawClassification(BaseModel):
    """Classification service response, before validation against known classifiers."""

    classifier_id: Optional[str] = None
    confidence: float = 0.0


class ClassificationResult(BaseModel):
    """Best classifier match for one email (classifier_id None means no match)."""

    email_id: str
    classifier_id: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


SyncStage = Literal["idle", "listing", "syncing", "complete"]


class SyncProgress(BaseModel):
    """Snapshot of a background sync run, passed to progress callbacks."""

    stage: SyncStage = "idle"
    total_queued: int = 0
    total_synced: int = 0
    total_failed: int = 0
    current_batch: int = 0
    errors: List[str] = Field(default_factory=list)
    is_running: bool = False
    current_concurrency: Optional[int] = None
    retry_count: int = 0


EmailStatus = Literal["pending", "classifying", "completed", "failed"]


class EmailProgress(BaseModel):
    """Per-email classification progress event."""

    email_id: str
    subject: str
    status: EmailStatus
    progress: int = Field(default=0, ge=0, le=100)
    classifier: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[str] = None

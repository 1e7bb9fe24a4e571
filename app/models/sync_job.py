"""
SyncJob model - one email ingestion run for one user.

Lifecycle:
    pending -> running -> completed | failed

Mutated in place by the email sync service while the run progresses and
read concurrently by status pollers. Terminal jobs are kept for history.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Index, text
from app.database import Base
from app.utils.date_formatter import utcnow
import enum
import uuid


class SyncJobStatus(str, enum.Enum):
    """Status of a sync job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncJobKind(str, enum.Enum):
    """What a job does with its candidates."""
    SYNC = "sync"            # list + fetch from the provider
    REPROCESS = "reprocess"  # re-parse already stored raw emails


ACTIVE_STATUSES = (SyncJobStatus.PENDING.value, SyncJobStatus.RUNNING.value)
TERMINAL_STATUSES = (SyncJobStatus.COMPLETED.value, SyncJobStatus.FAILED.value)

# Allowed forward moves; terminal states have none
ALLOWED_TRANSITIONS = {
    SyncJobStatus.PENDING.value: {SyncJobStatus.RUNNING.value, SyncJobStatus.FAILED.value},
    SyncJobStatus.RUNNING.value: {SyncJobStatus.COMPLETED.value, SyncJobStatus.FAILED.value},
    SyncJobStatus.COMPLETED.value: set(),
    SyncJobStatus.FAILED.value: set(),
}

COUNTER_FIELDS = (
    "processed_emails",
    "new_emails",
    "transactions",
    "statements",
    "failed_emails",
)


def _new_job_id() -> str:
    return str(uuid.uuid4())


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True, default=_new_job_id)
    user_id = Column(String(64), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=SyncJobStatus.PENDING.value)
    kind = Column(String(20), nullable=False, default=SyncJobKind.SYNC.value)
    category = Column(String(50), nullable=False, default="expenses")

    # Provider search + page token this run started from
    query = Column(String(512))
    cursor = Column(String(512))

    # ============ PROGRESS ============
    total_emails = Column(Integer)  # unknown until candidates are listed
    processed_emails = Column(Integer, nullable=False, default=0)
    new_emails = Column(Integer, nullable=False, default=0)
    transactions = Column(Integer, nullable=False, default=0)
    statements = Column(Integer, nullable=False, default=0)
    failed_emails = Column(Integer, nullable=False, default=0)

    error_message = Column(Text)

    # ============ TIMESTAMPS ============
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_sync_jobs_user_created", "user_id", "created_at"),
        # One pending/running job per user
        Index(
            "uq_sync_jobs_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<SyncJob(id={self.id}, user={self.user_id}, status={self.status})>"


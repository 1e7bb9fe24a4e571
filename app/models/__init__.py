"""
SQLAlchemy models for the mail ledger sync service.

This package contains:
- RawEmail: Fetched provider messages, stored before any parsing
- SyncJob: One ingestion run and its progress counters
"""

from app.models.raw_email import RawEmail
from app.models.sync_job import SyncJob, SyncJobStatus, SyncJobKind

__all__ = ["RawEmail", "SyncJob", "SyncJobStatus", "SyncJobKind"]

"""
Persistence for SyncJob records.

Every write here is one commit of the whole row, so a poller reading the
job never sees half of a progress update. Status changes go through
`_transition`, which only allows forward moves:

    pending -> running -> completed | failed
    pending -> failed
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from app.exceptions import ActiveSyncJobError, InvalidTransitionError, SyncJobNotFoundError
from app.models.sync_job import (
    SyncJob, SyncJobStatus, SyncJobKind,
    ACTIVE_STATUSES, ALLOWED_TRANSITIONS, COUNTER_FIELDS,
)
from app.utils.date_formatter import utcnow

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = "Sync job timed out"


# ============ QUERIES ============

def get(db: Session, job_id: str) -> Optional[SyncJob]:
    return db.query(SyncJob).filter(SyncJob.id == job_id).first()


def get_for_user(db: Session, job_id: str, user_id: str) -> Optional[SyncJob]:
    """A job only if it belongs to `user_id`."""
    return db.query(SyncJob).filter(
        SyncJob.id == job_id,
        SyncJob.user_id == user_id
    ).first()


def list_by_user(db: Session, user_id: str, limit: int = 10, category: str = None) -> list[SyncJob]:
    query = db.query(SyncJob).filter(SyncJob.user_id == user_id)
    if category:
        query = query.filter(SyncJob.category == category)
    return query.order_by(SyncJob.created_at.desc()).limit(limit).all()


def find_active(db: Session, user_id: str) -> Optional[SyncJob]:
    return db.query(SyncJob).filter(
        SyncJob.user_id == user_id,
        SyncJob.status.in_(ACTIVE_STATUSES)
    ).first()


def find_last_completed(
    db: Session,
    user_id: str,
    category: str = None,
    kind: str = SyncJobKind.SYNC.value
) -> Optional[SyncJob]:
    """Most recent completed job, used as the high-water mark for incremental sync."""
    query = db.query(SyncJob).filter(
        SyncJob.user_id == user_id,
        SyncJob.status == SyncJobStatus.COMPLETED.value,
        SyncJob.kind == kind
    )
    if category:
        query = query.filter(SyncJob.category == category)
    return query.order_by(SyncJob.completed_at.desc()).first()


# ============ CREATE ============

def create(
    db: Session,
    user_id: str,
    category: str = "expenses",
    query: str = None,
    cursor: str = None,
    kind: str = SyncJobKind.SYNC.value
) -> SyncJob:
    """
    Insert a new pending job.

    Raises:
        ActiveSyncJobError: the user already has a pending or running job
    """
    active = find_active(db, user_id)
    if active:
        raise ActiveSyncJobError(active)

    job = SyncJob(
        user_id=user_id,
        status=SyncJobStatus.PENDING.value,
        kind=kind,
        category=category,
        query=query,
        cursor=cursor,
        processed_emails=0,
        new_emails=0,
        transactions=0,
        statements=0,
        failed_emails=0
    )
    db.add(job)

    try:
        db.commit()
    except IntegrityError:
        # Lost the race against a concurrent create for the same user
        db.rollback()
        active = find_active(db, user_id)
        if active:
            raise ActiveSyncJobError(active)
        raise

    db.refresh(job)
    logger.info(f"Sync job {job.id} created for user {user_id} [{kind}/{category}]")
    return job


# ============ TRANSITIONS ============

def _require(db: Session, job_id: str) -> SyncJob:
    """
    Current row, locked for the rest of the transaction.

    Re-read from the database so a status set by another session (a stale
    sweep, a concurrent mark_failed) is seen by a long-running worker.
    """
    job = db.query(SyncJob).populate_existing().with_for_update().filter(SyncJob.id == job_id).first()
    if not job:
        raise SyncJobNotFoundError(job_id)
    return job


def _transition(job: SyncJob, target: SyncJobStatus) -> None:
    if target.value not in ALLOWED_TRANSITIONS[job.status]:
        raise InvalidTransitionError(job.id, job.status, target.value)
    job.status = target.value


def mark_running(db: Session, job_id: str) -> SyncJob:
    job = _require(db, job_id)
    _transition(job, SyncJobStatus.RUNNING)
    job.started_at = utcnow()
    db.commit()
    return job


def set_total(db: Session, job_id: str, total: int) -> SyncJob:
    job = _require(db, job_id)
    if job.is_terminal:
        raise InvalidTransitionError(job.id, job.status, job.status)
    if total < job.processed_emails:
        raise ValueError(f"total_emails {total} is below processed_emails {job.processed_emails}")
    job.total_emails = total
    db.commit()
    return job


def save_progress(db: Session, job_id: str, **counters: int) -> SyncJob:
    """
    Persist the full counter set in one commit.

    Accepts any of processed_emails, new_emails, transactions, statements,
    failed_emails. Counters never go down, and processed_emails never
    exceeds total_emails once the total is known.
    """
    unknown = set(counters) - set(COUNTER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown progress fields: {', '.join(sorted(unknown))}")

    job = _require(db, job_id)
    if job.is_terminal:
        raise InvalidTransitionError(job.id, job.status, job.status)

    for field, value in counters.items():
        if value < (getattr(job, field) or 0):
            raise ValueError(f"{field} cannot decrease ({getattr(job, field)} -> {value})")

    processed = counters.get("processed_emails", job.processed_emails)
    if job.total_emails is not None and processed > job.total_emails:
        raise ValueError(f"processed_emails {processed} exceeds total_emails {job.total_emails}")

    for field, value in counters.items():
        setattr(job, field, value)
    job.updated_at = utcnow()

    db.commit()
    return job


def mark_completed(db: Session, job_id: str) -> SyncJob:
    job = _require(db, job_id)
    _transition(job, SyncJobStatus.COMPLETED)
    job.completed_at = utcnow()
    db.commit()
    logger.info(f"Sync job {job_id} completed")
    return job


def mark_failed(db: Session, job_id: str, error_message: str) -> SyncJob:
    job = _require(db, job_id)
    _transition(job, SyncJobStatus.FAILED)
    job.error_message = error_message or "Unknown error"
    job.completed_at = utcnow()
    db.commit()
    logger.info(f"Sync job {job_id} failed: {job.error_message}")
    return job


# ============ STALE JOBS ============

def fail_stale_jobs(db: Session, stale_after: timedelta, user_id: str = None) -> list[SyncJob]:
    """
    Fail active jobs that have not been updated within `stale_after`.

    A worker that died mid-run leaves its job active forever otherwise,
    which would also block the user from starting a new sync.
    """
    cutoff = utcnow() - stale_after
    query = db.query(SyncJob).filter(
        SyncJob.status.in_(ACTIVE_STATUSES),
        SyncJob.updated_at < cutoff
    )
    if user_id:
        query = query.filter(SyncJob.user_id == user_id)

    stale = query.all()
    now = utcnow()
    for job in stale:
        job.status = SyncJobStatus.FAILED.value
        job.error_message = STALE_JOB_MESSAGE
        job.completed_at = now
        logger.warning(f"Sync job {job.id} marked failed: no progress since {job.updated_at}")

    if stale:
        db.commit()
    return stale

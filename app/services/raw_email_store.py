"""
Raw email store.

Upserts fetched emails keyed by (user_id, provider, provider_message_id) so
re-running a sync over an unchanged mailbox never duplicates rows, and lists
stored emails for reprocessing and the emails endpoint.
"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from sqlalchemy import func
from typing import Optional

from app.models.raw_email import RawEmail
from app.utils.date_formatter import utcnow


def _find(db: Session, user_id: str, provider: str, provider_message_id: str) -> Optional[RawEmail]:
    return db.query(RawEmail).filter(
        RawEmail.user_id == user_id,
        RawEmail.provider == provider,
        RawEmail.provider_message_id == provider_message_id
    ).first()


def upsert(db: Session, user_id: str, email: dict) -> tuple[RawEmail, bool]:
    """
    Save a fetched email unless it is already stored.

    Args:
        db: Database session
        user_id: Mailbox owner
        email: Raw email payload from the provider gateway

    Returns:
        (RawEmail, is_new): the stored record and whether this call created it
    """
    provider = email.get("provider", "gmail")
    provider_message_id = email["provider_message_id"]

    existing = _find(db, user_id, provider, provider_message_id)
    if existing:
        existing.updated_at = utcnow()
        db.commit()
        return existing, False

    record = RawEmail(
        user_id=user_id,
        provider=provider,
        provider_message_id=provider_message_id,
        category=email.get("category") or "expenses",
        sender=(email.get("sender") or "")[:255],
        subject=(email.get("subject") or "")[:512],
        snippet=(email.get("snippet") or "")[:512],
        body_text=email.get("body_text") or "",
        body_html=email.get("body_html"),
        raw_headers=email.get("raw_headers") or {},
        received_at=email.get("received_at") or utcnow()
    )

    db.add(record)

    try:
        db.commit()
        db.refresh(record)
        return record, True
    except IntegrityError:
        # Race condition - a concurrent run stored it first
        db.rollback()
        return _find(db, user_id, provider, provider_message_id), False


def get_by_id(db: Session, user_id: str, email_id: int) -> Optional[RawEmail]:
    return db.query(RawEmail).filter(
        RawEmail.user_id == user_id,
        RawEmail.id == email_id
    ).first()


def list_by_user(
    db: Session,
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    category: str = None
) -> list[RawEmail]:
    """Stored emails for a user, newest first."""
    query = db.query(RawEmail).filter(RawEmail.user_id == user_id)

    if category:
        query = query.filter(RawEmail.category == category)

    query = query.order_by(RawEmail.received_at.desc(), RawEmail.id.desc())
    return query.offset(offset).limit(limit).all()


def list_all_by_user(db: Session, user_id: str, category: str = None) -> list[RawEmail]:
    query = db.query(RawEmail).filter(RawEmail.user_id == user_id)
    if category:
        query = query.filter(RawEmail.category == category)
    return query.order_by(RawEmail.received_at.asc(), RawEmail.id.asc()).all()


def count_by_user(db: Session, user_id: str, category: str = None) -> int:
    query = db.query(func.count(RawEmail.id)).filter(RawEmail.user_id == user_id)
    if category:
        query = query.filter(RawEmail.category == category)
    return query.scalar()

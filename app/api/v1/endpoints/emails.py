"""
Stored raw emails for the caller - the list a client refreshes after a sync completes.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import get_current_user_id
from app.database import get_db
from app.services import raw_email_store

router = APIRouter(prefix="/emails", tags=["Emails"])


class EmailSummaryResponse(BaseModel):
    id: int
    provider: str
    provider_message_id: str
    category: str
    sender: Optional[str]
    subject: Optional[str]
    snippet: Optional[str]
    received_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class EmailDetailResponse(EmailSummaryResponse):
    body_text: Optional[str]
    body_html: Optional[str]
    raw_headers: Optional[dict]


class EmailsListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    emails: list[EmailSummaryResponse]


@router.get("", response_model=EmailsListResponse)
def list_emails(
    limit: int = Query(50, ge=1, le=100, description="Max results"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    category: Optional[str] = Query(None, description="Filter by category tag, e.g. 'expenses'"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """List stored emails, newest first."""
    return EmailsListResponse(
        total=raw_email_store.count_by_user(db, user_id, category=category),
        limit=limit,
        offset=offset,
        emails=raw_email_store.list_by_user(db, user_id, limit=limit, offset=offset, category=category)
    )


@router.get("/{email_id}", response_model=EmailDetailResponse)
def get_email(
    email_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    email = raw_email_store.get_by_id(db, user_id, email_id)
    if not email:
        raise HTTPException(status_code=404, detail=f"Email {email_id} not found")
    return email

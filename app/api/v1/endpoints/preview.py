"""
Preview fetch: pull a handful of emails from Gmail without storing anything.

Used to try out search queries before running a real sync.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.api.deps import get_current_user_id, get_sync_service
from app.exceptions import ProviderError, ProviderAuthError
from app.services.email_sync import EmailSyncService

router = APIRouter(prefix="/preview", tags=["Preview"])


class PreviewRequest(BaseModel):
    query: str = Field(
        ...,
        min_length=1,
        max_length=512,
        description="Gmail query string used to fetch emails for preview",
        examples=["subject:(statement OR receipt) newer_than:30d"]
    )
    limit: int = Field(..., ge=1, le=20, description="Maximum number of emails to fetch (1-20)")


class PreviewEmail(BaseModel):
    provider: str
    provider_message_id: str
    category: str
    sender: str
    subject: str
    snippet: str
    received_at: Optional[datetime]
    body_text: str
    body_html: Optional[str]
    raw_headers: dict[str, str]


class PreviewListResponse(BaseModel):
    object: str = "list"
    data: list[PreviewEmail]
    page: int
    page_size: int
    total: int
    has_more: bool


@router.post("/fetch", response_model=PreviewListResponse)
def fetch_preview_emails(
    body: PreviewRequest,
    user_id: str = Depends(get_current_user_id),
    service: EmailSyncService = Depends(get_sync_service)
):
    """
    Fetch up to 20 emails matching a Gmail query and return the raw payloads.

    Creates no sync job and stores nothing.
    """
    try:
        emails = service.fetch_preview_emails(
            user_id,
            query=body.query,
            max_results=body.limit,
            category="playground"
        )
    except ProviderAuthError as e:
        raise HTTPException(status_code=401, detail=e.message)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=e.message)

    return PreviewListResponse(
        data=emails,
        page=1,
        page_size=body.limit,
        total=len(emails),
        has_more=False
    )

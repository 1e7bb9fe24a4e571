"""
Shared FastAPI dependencies for the v1 endpoints.
"""

from fastapi import Header, HTTPException, Request

from app.services.email_sync import EmailSyncService


def get_current_user_id(x_user_id: str | None = Header(default=None, max_length=64)) -> str:
    """
    Caller identity for user-scoped endpoints.

    Sessions are terminated upstream (API gateway); requests arrive with the
    authenticated user id in `X-User-Id`.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_sync_service(request: Request) -> EmailSyncService:
    return request.app.state.sync_service

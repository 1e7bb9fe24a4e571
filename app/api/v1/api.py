from fastapi import APIRouter
from app.api.v1.endpoints import sync, preview, emails

api_router = APIRouter(prefix="/api/v1")

# Include all endpoint routers
api_router.include_router(sync.router)
api_router.include_router(preview.router)
api_router.include_router(emails.router)

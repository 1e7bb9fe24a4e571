import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.api import api_router
from app.config import Config
from app.database import Database
from app.services.email_sync import EmailSyncService
from app.services.gmail_service import GmailProvider

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(database: Database = None, provider=None) -> FastAPI:
    """
    Build the application.

    The database handle and email provider are created here (or injected by
    tests) and live on `app.state` for the lifetime of the process.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database()
        db.create_tables()
        logger.info("✅ Database tables created/verified")

        app.state.db = db
        app.state.sync_service = EmailSyncService(
            session_factory=db.session_factory,
            provider=provider or GmailProvider()
        )

        stale = app.state.sync_service.fail_stale_jobs()
        if stale:
            logger.warning(f"Marked {len(stale)} stale sync jobs as failed")

        yield

        logger.info("Shutting down, closing database connections")
        db.dispose()

    app = FastAPI(
        title="Mail Ledger Sync",
        description="Asynchronous Gmail ingestion jobs for expense tracking",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    @app.get("/")
    def health_check():
        return {"status": "ok"}

    return app


app = create_app()

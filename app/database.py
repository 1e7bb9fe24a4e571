from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from app.config import Config


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Database:
    """
    Owns the engine (connection pool) and the session factory.

    Created once at application startup and disposed at shutdown.
    Request handlers get sessions through `get_db`; background sync
    runs receive `session_factory` and open their own sessions.
    """

    def __init__(self, url: str = None, echo: bool = None):
        self.url = url or Config.DATABASE_URL
        self.engine = self._create_engine(self.url, Config.SQL_ECHO if echo is None else echo)
        self.session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False
        )

    @staticmethod
    def _create_engine(url: str, echo: bool):
        if url.startswith("sqlite"):
            # In-memory SQLite must share one connection across threads
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
                kwargs["poolclass"] = StaticPool
            return create_engine(url, echo=echo, **kwargs)

        return create_engine(
            url,
            echo=echo,
            pool_pre_ping=True  # Verify connections before use
        )

    def create_tables(self) -> None:
        # Import models so they register on Base.metadata
        import app.models  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    def session(self):
        return self.session_factory()

    def dispose(self) -> None:
        """Drain and close every pooled connection."""
        self.engine.dispose()


def get_database(request: Request) -> Database:
    return request.app.state.db


def get_db(request: Request):
    """
    FastAPI dependency to get a database session.

    Usage:
        @router.get("/items")
        def get_items(db: Session = Depends(get_db)):
            ...

    Yields:
        Session: Database session that auto-closes after request
    """
    db = get_database(request).session()
    try:
        yield db
    finally:
        db.close()

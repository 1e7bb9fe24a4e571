"""
RawEmail model for storing fetched provider messages before parsing.

Kept for:
- Reprocessing when parsers improve (no provider round-trip)
- Deduplication via unique (user_id, provider, provider_message_id)
- Sharing one ingestion pipeline across features via `category`
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, UniqueConstraint, Index
from app.database import Base
from app.utils.date_formatter import utcnow


class RawEmail(Base):
    __tablename__ = "raw_emails"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False)

    # Provider identifier (unique per user - prevents duplicates)
    provider = Column(String(20), nullable=False, default="gmail")
    provider_message_id = Column(String(64), nullable=False)

    # Why it was fetched, e.g. "expenses"
    category = Column(String(50), nullable=False, default="expenses", index=True)

    # Email metadata
    sender = Column(String(255), index=True)
    subject = Column(String(512))
    snippet = Column(String(512))

    # Full content for reprocessing
    body_text = Column(Text)
    body_html = Column(Text)
    raw_headers = Column(JSON)

    # Timestamps
    received_at = Column(DateTime)  # When the provider received it
    created_at = Column(DateTime, nullable=False, default=utcnow)  # When we stored it
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "provider_message_id",
            name="uq_raw_emails_user_provider_message"
        ),
        Index("ix_raw_emails_user_received", "user_id", "received_at"),
    )

    def __repr__(self):
        return f"<RawEmail(id={self.id}, sender={self.sender}, subject={self.subject[:30] if self.subject else ''})>"


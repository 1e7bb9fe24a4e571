"""
Shared fixtures: in-memory database, a scripted fake Gmail provider,
the sync service and a FastAPI test client wired to both.
"""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from app.database import Database
from app.exceptions import ProviderError
from app.services.email_sync import EmailSyncService
from main import create_app


def make_email(message_id: str, subject: str = "Transaction alert", sender: str = "alerts@hdfcbank.net",
               body_text: str = None, category: str = "expenses") -> dict:
    """Raw email payload as the Gmail gateway returns it."""
    if body_text is None:
        body_text = f"Rs.{100 + len(message_id)}.00 spent on your credit card ending 1234 at AMAZON on 12-03-24."
    return {
        "provider": "gmail",
        "provider_message_id": message_id,
        "category": category,
        "sender": sender,
        "subject": subject,
        "snippet": body_text[:100],
        "received_at": datetime(2024, 3, 12, 10, 30),
        "body_text": body_text,
        "body_html": None,
        "raw_headers": {"from": sender, "subject": subject},
    }


class FakeProvider:
    """
    In-memory stand-in for GmailProvider.

    `mailbox` maps message id -> raw email payload. Set `list_error` or
    `fetch_error` to a ProviderError to simulate provider failures.
    """

    def __init__(self, emails: list[dict] = None):
        self.mailbox = {}
        self.list_error = None
        self.fetch_error = None
        self.missing_ids = set()
        self.list_calls = []
        self.fetch_calls = []
        for email in emails or []:
            self.add(email)

    def add(self, email: dict) -> None:
        self.mailbox[email["provider_message_id"]] = email

    def list_messages(self, user_id, query, cursor=None, max_results=None):
        self.list_calls.append({"user_id": user_id, "query": query, "cursor": cursor, "max_results": max_results})
        if self.list_error:
            raise self.list_error
        ids = list(self.mailbox)
        if max_results:
            ids = ids[:max_results]
        return [{"id": message_id} for message_id in ids]

    def fetch_content_batch(self, user_id, message_ids, category=None):
        self.fetch_calls.append(list(message_ids))
        if self.fetch_error:
            raise self.fetch_error
        results = []
        for message_id in message_ids:
            if message_id in self.missing_ids:
                continue
            email = dict(self.mailbox[message_id])
            email["category"] = category or email["category"]
            results.append(email)
        return results


@pytest.fixture
def database():
    db = Database("sqlite://", echo=False)
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def session(database):
    db = database.session()
    yield db
    db.close()


@pytest.fixture
def provider():
    return FakeProvider([make_email(f"msg-{i}") for i in range(1, 6)])


@pytest.fixture
def sync_service(database, provider):
    return EmailSyncService(database.session_factory, provider, batch_size=2)


@pytest.fixture
def client(database, provider):
    app = create_app(database=database, provider=provider)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    return {"X-User-Id": "user-1"}


@pytest.fixture
def auth_error():
    return ProviderError("Gmail authorization expired: invalid_grant", status_code=401)

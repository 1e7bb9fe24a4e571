"""
Tests for the Gmail gateway against a mocked Gmail API resource.
"""

import base64
import json
from datetime import datetime
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from app.config import Config
from app.exceptions import ProviderAuthError, ProviderError
from app.services import gmail_service
from app.services.gmail_service import (
    GmailProvider,
    describe_http_error,
    extract_body,
    load_credentials,
    message_to_raw_email,
)


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")


def http_error(status: int, message: str = "error") -> HttpError:
    content = json.dumps({"error": {"code": status, "message": message}}).encode("utf-8")
    return HttpError(httplib2.Response({"status": status}), content)


def gmail_message(message_id: str, subject: str = "Transaction alert", text: str = "Rs.100 spent at CAFE",
                  html: str = None) -> dict:
    parts = [{"mimeType": "text/plain", "body": {"data": b64(text)}}]
    if html:
        parts.append({"mimeType": "text/html", "body": {"data": b64(html)}})
    return {
        "id": message_id,
        "snippet": text[:50],
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": "HDFC Bank <alerts@hdfcbank.net>"},
                {"name": "Subject", "value": subject},
                {"name": "Date", "value": "Tue, 12 Mar 2024 10:30:00 +0530"},
            ],
            "body": {"size": 0},
            "parts": parts,
        },
    }


class FakeBatch:
    """Mimics BatchHttpRequest: collects requests, answers through the callback."""

    def __init__(self, callback, responses):
        self.callback = callback
        self.responses = responses
        self.request_ids = []

    def add(self, request, request_id=None):
        self.request_ids.append(request_id)

    def execute(self):
        for request_id in self.request_ids:
            outcome = self.responses[request_id]
            if isinstance(outcome, Exception):
                self.callback(request_id, None, outcome)
            else:
                self.callback(request_id, outcome, None)


def batch_service(responses: dict) -> MagicMock:
    service = MagicMock()
    service.new_batch_http_request.side_effect = lambda callback: FakeBatch(callback, responses)
    return service


class TestMessageConversion:

    def test_converts_full_message(self):
        raw = message_to_raw_email(gmail_message("m1", html="<p>Rs.100 spent</p>"), "expenses")

        assert raw["provider"] == "gmail"
        assert raw["provider_message_id"] == "m1"
        assert raw["category"] == "expenses"
        assert raw["sender"] == "HDFC Bank <alerts@hdfcbank.net>"
        assert raw["subject"] == "Transaction alert"
        assert raw["body_text"] == "Rs.100 spent at CAFE"
        assert raw["body_html"] == "<p>Rs.100 spent</p>"
        assert raw["received_at"] == datetime(2024, 3, 12, 5, 0)
        assert raw["raw_headers"]["subject"] == "Transaction alert"

    def test_nested_parts_are_searched(self):
        payload = {
            "mimeType": "multipart/mixed",
            "parts": [
                {"mimeType": "multipart/alternative", "parts": [
                    {"mimeType": "text/html", "body": {"data": b64("<b>hi</b>")}},
                ]},
            ],
        }

        assert extract_body(payload, "text/html") == "<b>hi</b>"
        assert extract_body(payload, "text/plain") is None

    def test_missing_date_header(self):
        msg = gmail_message("m1")
        msg["payload"]["headers"] = [h for h in msg["payload"]["headers"] if h["name"] != "Date"]

        assert message_to_raw_email(msg, "expenses")["received_at"] is None


class TestHttpErrorMapping:

    def test_401_is_auth_error(self):
        error = describe_http_error(http_error(401, "Invalid Credentials"))

        assert isinstance(error, ProviderAuthError)
        assert error.status_code == 401
        assert "Invalid Credentials" in error.message

    def test_429_is_rate_limit(self):
        error = describe_http_error(http_error(429, "Too many requests"))

        assert not isinstance(error, ProviderAuthError)
        assert "rate limit" in error.message

    def test_other_status(self):
        error = describe_http_error(http_error(500, "Backend Error"))

        assert error.status_code == 500
        assert "Backend Error" in error.message


class TestListMessages:

    def test_follows_pagination(self):
        service = MagicMock()
        list_call = service.users.return_value.messages.return_value.list
        list_call.return_value.execute.side_effect = [
            {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"},
            {"messages": [{"id": "c"}]},
        ]
        provider = GmailProvider(service_factory=lambda user_id: service)

        refs = provider.list_messages("user-1", "in:inbox")

        assert refs == [{"id": "a"}, {"id": "b"}, {"id": "c"}]
        assert list_call.call_args_list[1].kwargs["pageToken"] == "p2"
        assert list_call.call_args_list[0].kwargs["q"] == "in:inbox"

    def test_starts_from_cursor_and_respects_max_results(self):
        service = MagicMock()
        list_call = service.users.return_value.messages.return_value.list
        list_call.return_value.execute.return_value = {
            "messages": [{"id": "a"}, {"id": "b"}, {"id": "c"}],
            "nextPageToken": "more",
        }
        provider = GmailProvider(service_factory=lambda user_id: service)

        refs = provider.list_messages("user-1", "in:inbox", cursor="p5", max_results=2)

        assert refs == [{"id": "a"}, {"id": "b"}]
        assert list_call.call_count == 1
        assert list_call.call_args.kwargs["pageToken"] == "p5"
        assert list_call.call_args.kwargs["maxResults"] == 2

    def test_empty_result(self):
        service = MagicMock()
        service.users.return_value.messages.return_value.list.return_value.execute.return_value = {
            "resultSizeEstimate": 0
        }
        provider = GmailProvider(service_factory=lambda user_id: service)

        assert provider.list_messages("user-1", "in:nothing") == []

    def test_http_error_becomes_provider_error(self):
        service = MagicMock()
        service.users.return_value.messages.return_value.list.return_value.execute.side_effect = http_error(401)
        provider = GmailProvider(service_factory=lambda user_id: service)

        with pytest.raises(ProviderAuthError):
            provider.list_messages("user-1", "in:inbox")

    def test_missing_credentials(self, tmp_path, monkeypatch):
        monkeypatch.setattr(Config, "GOOGLE_TOKEN_DIR", str(tmp_path / "tokens"))
        monkeypatch.setattr(Config, "GOOGLE_TOKEN_FILE", str(tmp_path / "token.json"))
        provider = GmailProvider()

        with pytest.raises(ProviderAuthError) as exc:
            provider.list_messages("user-1", "in:inbox")

        assert "not connected" in exc.value.message


class TestFetchContentBatch:

    def test_returns_emails_in_listing_order(self):
        service = batch_service({
            "m1": gmail_message("m1"),
            "m2": gmail_message("m2", subject="Statement"),
        })
        provider = GmailProvider(service_factory=lambda user_id: service)

        emails = provider.fetch_content_batch("user-1", ["m2", "m1"], category="expenses")

        assert [e["provider_message_id"] for e in emails] == ["m2", "m1"]
        assert emails[0]["subject"] == "Statement"

    def test_individual_failures_are_skipped(self):
        service = batch_service({
            "m1": gmail_message("m1"),
            "gone": http_error(404, "Not Found"),
        })
        provider = GmailProvider(service_factory=lambda user_id: service)

        emails = provider.fetch_content_batch("user-1", ["m1", "gone"])

        assert [e["provider_message_id"] for e in emails] == ["m1"]
        assert emails[0]["category"] == Config.SYNC_DEFAULT_CATEGORY

    def test_throttled_messages_in_batch_raise_rate_limit(self):
        service = batch_service({
            "m1": gmail_message("m1"),
            "m2": http_error(429, "Too many concurrent requests for user"),
            "m3": gmail_message("m3"),
        })
        provider = GmailProvider(service_factory=lambda user_id: service)

        with pytest.raises(ProviderError) as exc:
            provider.fetch_content_batch("user-1", ["m1", "m2", "m3"])

        assert not isinstance(exc.value, ProviderAuthError)
        assert exc.value.status_code == 429
        assert "rate limit" in exc.value.message

    def test_403_rate_limit_exceeded_in_batch_raises(self):
        service = batch_service({
            "m1": http_error(403, "User Rate Limit Exceeded"),
            "m2": gmail_message("m2"),
        })
        provider = GmailProvider(service_factory=lambda user_id: service)

        with pytest.raises(ProviderError) as exc:
            provider.fetch_content_batch("user-1", ["m1", "m2"])

        assert exc.value.status_code == 403

    def test_auth_failure_in_batch_raises(self):
        service = batch_service({"m1": http_error(401, "Invalid Credentials")})
        provider = GmailProvider(service_factory=lambda user_id: service)

        with pytest.raises(ProviderAuthError):
            provider.fetch_content_batch("user-1", ["m1"])

    def test_large_lists_are_chunked(self):
        ids = [f"m{i}" for i in range(150)]
        service = batch_service({message_id: gmail_message(message_id) for message_id in ids})
        provider = GmailProvider(service_factory=lambda user_id: service)

        emails = provider.fetch_content_batch("user-1", ids)

        assert len(emails) == 150
        assert service.new_batch_http_request.call_count == 2

    def test_empty_ids_make_no_calls(self):
        factory = MagicMock()
        provider = GmailProvider(service_factory=factory)

        assert provider.fetch_content_batch("user-1", []) == []
        factory.assert_not_called()

    def test_whole_batch_failure_raises_provider_error(self):
        service = MagicMock()
        service.new_batch_http_request.return_value.execute.side_effect = http_error(503, "Backend unavailable")
        provider = GmailProvider(service_factory=lambda user_id: service)

        with pytest.raises(ProviderError) as exc:
            provider.fetch_content_batch("user-1", ["m1"])

        assert exc.value.status_code == 503


def test_load_credentials_without_token_file(tmp_path, monkeypatch):
    monkeypatch.setattr(Config, "GOOGLE_TOKEN_DIR", str(tmp_path))
    monkeypatch.setattr(Config, "GOOGLE_TOKEN_FILE", str(tmp_path / "missing.json"))

    with pytest.raises(ProviderAuthError):
        load_credentials("user-1")


def test_connect_account_writes_per_user_token(tmp_path, monkeypatch):
    monkeypatch.setattr(Config, "GOOGLE_TOKEN_DIR", str(tmp_path / "tokens"))
    creds = MagicMock()
    creds.to_json.return_value = '{"token": "abc"}'
    flow = MagicMock()
    flow.run_local_server.return_value = creds
    from_secrets = MagicMock(return_value=flow)
    monkeypatch.setattr(gmail_service.InstalledAppFlow, "from_client_secrets_file", from_secrets)

    path = gmail_service.connect_account("user-1")

    assert path == str(tmp_path / "tokens" / "user-1.json")
    assert (tmp_path / "tokens" / "user-1.json").read_text() == '{"token": "abc"}'
    assert gmail_service.token_path_for("user-1") == path
    from_secrets.assert_called_once_with(Config.GOOGLE_CREDENTIALS_FILE, gmail_service.SCOPES)


def test_fetch_content_single_message():
    service = MagicMock()
    get_call = service.users.return_value.messages.return_value.get
    get_call.return_value.execute.return_value = gmail_message("m7", subject="Debit alert")
    provider = GmailProvider(service_factory=lambda user_id: service)

    email = provider.fetch_content("user-1", "m7", category="expenses")

    assert email["provider_message_id"] == "m7"
    assert email["subject"] == "Debit alert"
    get_call.assert_called_once_with(userId="me", id="m7", format="full")

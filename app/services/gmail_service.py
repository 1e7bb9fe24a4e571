"""
Gmail gateway: list message ids for a search query and fetch full content.

Credentials are the authorized-user token files written by the OAuth consent
flow (one file per user). Expired tokens are refreshed and written back.
"""

import os
import base64
import logging

from google_auth_oauthlib.flow import InstalledAppFlow
from google.oauth2.credentials import Credentials
from google.auth.transport.requests import Request
from google.auth.exceptions import GoogleAuthError, RefreshError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.config import Config
from app.exceptions import ProviderError, ProviderAuthError
from app.utils.date_formatter import parse_email_date

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
]

# Gmail API limits
LIST_PAGE_SIZE = 500
BATCH_CHUNK_SIZE = 100


def token_path_for(user_id: str) -> str:
    """Per-user token file, falling back to the single-account token.json."""
    per_user = os.path.join(Config.GOOGLE_TOKEN_DIR, f"{user_id}.json")
    if os.path.exists(per_user):
        return per_user
    return Config.GOOGLE_TOKEN_FILE


def connect_account(user_id: str, port: int = 0) -> str:
    """
    Run the local OAuth consent flow once for a user (opens a browser).

    Saves the authorized-user token to `<GOOGLE_TOKEN_DIR>/<user_id>.json`,
    the file `load_credentials` reads on every sync.

    Returns:
        Path of the written token file
    """
    flow = InstalledAppFlow.from_client_secrets_file(Config.GOOGLE_CREDENTIALS_FILE, SCOPES)
    creds = flow.run_local_server(port=port)

    os.makedirs(Config.GOOGLE_TOKEN_DIR, exist_ok=True)
    token_file = os.path.join(Config.GOOGLE_TOKEN_DIR, f"{user_id}.json")
    with open(token_file, "w") as token:
        token.write(creds.to_json())

    logger.info(f"Gmail connected for user {user_id}, token saved to {token_file}")
    return token_file


def load_credentials(user_id: str) -> Credentials:
    """
    Load stored OAuth credentials for a user, refreshing them if expired.

    Raises:
        ProviderAuthError: No token stored, token lacks Gmail scope, or refresh failed
    """
    token_file = token_path_for(user_id)

    if not os.path.exists(token_file):
        raise ProviderAuthError("Gmail account not connected")

    try:
        creds = Credentials.from_authorized_user_file(token_file, SCOPES)
    except ValueError as e:
        raise ProviderAuthError(f"Stored Gmail token is invalid: {e}")

    if creds.valid:
        return creds

    if not (creds.expired and creds.refresh_token):
        raise ProviderAuthError("Gmail token expired and no refresh token. Please reconnect Gmail.")

    try:
        creds.refresh(Request())
    except (RefreshError, GoogleAuthError) as e:
        raise ProviderAuthError(f"Gmail token refresh failed: {e}. Please reconnect Gmail.")

    # Save refreshed token for next run
    with open(token_file, "w") as token:
        token.write(creds.to_json())

    return creds


def http_status(error: HttpError) -> int | None:
    status = getattr(error.resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_rate_limited(error: HttpError) -> bool:
    """429, or 403 with a rateLimitExceeded / userRateLimitExceeded reason."""
    status = http_status(error)
    reason = getattr(error, "reason", None) or str(error)
    return status == 429 or (status == 403 and "rate" in reason.lower())


def describe_http_error(error: HttpError) -> ProviderError:
    """Map a googleapiclient HttpError onto a ProviderError with a readable summary."""
    status = http_status(error)
    reason = getattr(error, "reason", None) or str(error)

    if status == 401:
        return ProviderAuthError(f"Gmail authorization expired: {reason}", status_code=status)
    if is_rate_limited(error):
        return ProviderError(f"Gmail rate limit exceeded: {reason}", status_code=status)
    return ProviderError(f"Gmail API error ({status}): {reason}", status_code=status)


def decode_base64url(data: str) -> str:
    return base64.urlsafe_b64decode(data.encode("ascii")).decode("utf-8", errors="ignore")


def extract_body(payload: dict, mime_type: str) -> str | None:
    """Recursively find the first part of `mime_type` and decode it."""
    if not payload:
        return None

    data = payload.get("body", {}).get("data")
    if payload.get("mimeType") == mime_type and data:
        return decode_base64url(data)

    for part in payload.get("parts", []) or []:
        found = extract_body(part, mime_type)
        if found:
            return found

    return None


def message_to_raw_email(msg: dict, category: str) -> dict:
    """
    Convert a Gmail `format=full` message into a raw email payload.

    Returns:
        Dictionary with provider ids, sender, subject, snippet, bodies,
        lower-cased headers, received_at and category
    """
    payload = msg.get("payload", {}) or {}

    headers = {}
    for h in payload.get("headers", []) or []:
        if h.get("name") and h.get("value") is not None:
            headers[h["name"].lower()] = h["value"]

    body_text = extract_body(payload, "text/plain") or ""
    body_html = extract_body(payload, "text/html")

    return {
        "provider": "gmail",
        "provider_message_id": msg["id"],
        "category": category,
        "sender": headers.get("from", ""),
        "subject": headers.get("subject", ""),
        "snippet": msg.get("snippet", ""),
        "received_at": parse_email_date(headers.get("date")),
        "body_text": body_text,
        "body_html": body_html,
        "raw_headers": headers,
    }


class GmailProvider:
    """
    Email provider gateway backed by the Gmail API.

    `service_factory(user_id)` returns an authenticated Gmail API resource;
    the default builds one from the user's stored token.
    """

    def __init__(self, service_factory=None):
        self._service_factory = service_factory or self._build_service

    @staticmethod
    def _build_service(user_id: str):
        creds = load_credentials(user_id)
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    def _service(self, user_id: str):
        try:
            return self._service_factory(user_id)
        except ProviderError:
            raise
        except HttpError as e:
            raise describe_http_error(e)
        except GoogleAuthError as e:
            raise ProviderAuthError(f"Gmail authentication failed: {e}")

    def list_messages(
        self,
        user_id: str,
        query: str,
        cursor: str = None,
        max_results: int = None
    ) -> list[dict]:
        """
        List message ids matching `query`, following pagination.

        Args:
            user_id: Owner of the mailbox
            query: Gmail search string
            cursor: Page token to resume from
            max_results: Stop after this many ids (default SYNC_MAX_RESULTS)

        Returns:
            List of {"id": ...} dicts
        """
        service = self._service(user_id)
        total_max = max_results or Config.SYNC_MAX_RESULTS
        page_token = cursor
        messages = []

        try:
            while len(messages) < total_max:
                results = service.users().messages().list(
                    userId="me",
                    q=query,
                    maxResults=min(LIST_PAGE_SIZE, total_max - len(messages)),
                    pageToken=page_token
                ).execute()

                page = [{"id": m["id"]} for m in results.get("messages", []) if m.get("id")]
                messages.extend(page)
                logger.debug(
                    f"Gmail list page ({page_token or 'first'}): {len(page)} messages, "
                    f"estimate={results.get('resultSizeEstimate')}"
                )

                page_token = results.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as e:
            raise describe_http_error(e)

        return messages[:total_max]

    def fetch_content(self, user_id: str, message_id: str, category: str = None) -> dict:
        """Fetch one full message and convert it into a raw email payload."""
        service = self._service(user_id)
        try:
            msg = service.users().messages().get(
                userId="me",
                id=message_id,
                format="full"
            ).execute()
        except HttpError as e:
            raise describe_http_error(e)

        return message_to_raw_email(msg, category or Config.SYNC_DEFAULT_CATEGORY)

    def fetch_content_batch(self, user_id: str, message_ids: list[str], category: str = None) -> list[dict]:
        """
        Fetch many messages with Gmail batch requests (one HTTP call per chunk).

        Messages that fail individually (e.g. deleted since listing) are logged
        and left out. An auth or rate-limit failure on any message, or a failure
        of the whole batch call, raises ProviderError.
        """
        if not message_ids:
            return []

        service = self._service(user_id)
        category = category or Config.SYNC_DEFAULT_CATEGORY
        fetched = {}
        failures = []

        def on_message(request_id, response, exception):
            if exception is not None:
                failures.append((request_id, exception))
                return
            fetched[request_id] = response

        for start in range(0, len(message_ids), BATCH_CHUNK_SIZE):
            chunk = message_ids[start:start + BATCH_CHUNK_SIZE]
            logger.debug(
                f"Fetching email batch {start // BATCH_CHUNK_SIZE + 1}: "
                f"{len(chunk)} emails ({start + 1}-{start + len(chunk)} of {len(message_ids)})"
            )

            batch = service.new_batch_http_request(callback=on_message)
            for message_id in chunk:
                batch.add(
                    service.users().messages().get(userId="me", id=message_id, format="full"),
                    request_id=message_id
                )
            try:
                batch.execute()
            except HttpError as e:
                raise describe_http_error(e)

        # Expired auth or throttling on any message fails the whole fetch
        fatal = [
            e for _, e in failures
            if isinstance(e, HttpError) and (http_status(e) == 401 or is_rate_limited(e))
        ]
        if fatal:
            raise describe_http_error(fatal[0])

        for request_id, exception in failures:
            logger.warning(f"Failed to fetch email {request_id} in batch: {exception}")

        # Keep the listing order
        results = [
            message_to_raw_email(fetched[message_id], category)
            for message_id in message_ids
            if message_id in fetched
        ]
        logger.info(f"Batch fetch completed: {len(results)} successful out of {len(message_ids)} total")
        return results


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)
    if len(sys.argv) != 2:
        print("Usage: python -m app.services.gmail_service <user_id>")
        sys.exit(1)

    print(f"🔐 Connecting Gmail for {sys.argv[1]}")
    print(f"✅ Token saved: {connect_account(sys.argv[1])}")

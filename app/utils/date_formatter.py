from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def gmail_after_timestamp(dt: datetime, offset_days: int = 0) -> int:
    """
    Epoch seconds for Gmail's `after:` search operator.

    `dt` is treated as UTC when it carries no tzinfo.
    """
    adjusted = dt - timedelta(days=offset_days)
    if adjusted.tzinfo is None:
        adjusted = adjusted.replace(tzinfo=timezone.utc)
    return int(adjusted.timestamp())


def parse_email_date(value: str | None) -> datetime | None:
    """Parse an RFC 2822 `Date` header into naive UTC, None if unparseable."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

"""RFC 3339 UTC timestamp formatting shared by persistence and hashing."""

from datetime import UTC, datetime

RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_utc(value: datetime) -> str:
    """Render an aware datetime as a fixed-width RFC 3339 UTC string."""
    if value.tzinfo is None:
        raise ValueError(f"Naive datetime not allowed: {value!r}")
    return value.astimezone(UTC).strftime(RFC3339_FORMAT)


def parse_utc(value: str) -> datetime:
    """Parse an RFC 3339 string into an aware UTC datetime."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)

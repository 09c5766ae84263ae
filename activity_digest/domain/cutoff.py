from datetime import datetime, timedelta, timezone
from typing import Optional

MIN_SINCE_HOURS = 1
MAX_SINCE_HOURS = 720
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """Parses an ISO-8601 timestamp (with or without a 'Z' suffix). Returns None for empty or invalid input."""
    if not raw:
        return None
    try:
        return to_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        return None


def format_timestamp(value: datetime) -> str:
    """Renders a UTC timestamp with second precision and a literal 'Z' suffix."""
    return to_utc(value).strftime(TIMESTAMP_FORMAT)


def compute_cutoff(
    since_hours: int,
    now: Optional[datetime] = None,
    explicit: Optional[datetime] = None,
) -> datetime:
    """
    Returns the UTC instant below which events are not considered new.

    Args:
        since_hours (int): Look-back window, 1 to 720 hours.
        now (Optional[datetime]): Reference time, defaults to the current UTC time.
        explicit (Optional[datetime]): A caller-supplied cutoff that overrides the window.
    """
    if explicit is not None:
        return to_utc(explicit).replace(microsecond=0)

    if not MIN_SINCE_HOURS <= since_hours <= MAX_SINCE_HOURS:
        raise ValueError(
            f"since_hours must be between {MIN_SINCE_HOURS} and {MAX_SINCE_HOURS}, got {since_hours}."
        )

    reference = to_utc(now) if now is not None else datetime.now(timezone.utc)
    return (reference - timedelta(hours=since_hours)).replace(microsecond=0)

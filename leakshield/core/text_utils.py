from datetime import datetime, timezone
from typing import Optional


def pluralize(name: str, nb: int, plural: Optional[str] = None) -> str:
    if nb == 1:
        return name
    return plural or (name + "s")


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts the trailing "Z" designator and naive values, which are
    assumed to be UTC.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """
    Format an aware datetime as ISO-8601 UTC with a Z suffix.

    Microseconds are kept when present so a persisted cursor compares equal
    to the upstream value it was derived from.
    """
    value = value.astimezone(timezone.utc)
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")

"""Timestamp helpers shared by the store-facing modules."""

from datetime import datetime


def now() -> datetime:
    return datetime.now()


def to_db(val: datetime | None) -> str | None:
    """Serialize a timestamp with fixed precision so stored values sort correctly."""
    if val is None:
        return None
    return val.isoformat(timespec="microseconds")


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)

from datetime import datetime, timezone

from .text import sanitize_text

__all__ = ["sanitize_text", "utcnow"]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns used by the models."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

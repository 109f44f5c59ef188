"""
Utility functions for the application.
"""
import json

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

TWO_PLACES = Decimal("0.01")


def utc_now() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string (or datetime) into a naive UTC datetime.

    Args:
        value: ISO string, datetime or None

    Returns:
        Naive UTC datetime, or None if the value is empty or unparseable
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_money(value: Any) -> Optional[Decimal]:
    """Convert a JSON number (or numeric string) to a 2dp Decimal."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value)).quantize(TWO_PLACES)
    except (InvalidOperation, ValueError):
        return None


def parse_id_list(value: Any) -> List[str]:
    """
    Normalise an id field that may hold a plain id, a list, or a JSON array string.

    '["123", "456"]' -> ['123', '456'], 'abc' -> ['abc'], None -> []
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    text = str(value).strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            return []
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if item is not None and str(item).strip()]
        return []
    return [text]

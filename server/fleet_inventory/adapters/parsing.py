"""Coercion helpers for loosely typed PowerShell / snapshot payloads."""

import logging
import re
from datetime import datetime, timezone
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

# ConvertTo-Json on Windows PowerShell 5.1 renders DateTime as "/Date(1700000000000)/"
_MS_DATE_PATTERN = re.compile(r"^/Date\((-?\d+)(?:[+-]\d{4})?\)/$")


def coerce_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        logger.debug("Unable to coerce %r to float; using default %s", value, default)
        return default


def coerce_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        if value is None or value == "":
            return default
        return int(value)
    except (TypeError, ValueError):
        logger.debug("Unable to coerce %r to int; using default %s", value, default)
        return default


def coerce_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if value is None:
        return None

    text = str(value).strip().lower()
    if text in {"true", "1", "yes", "y"}:
        return True
    if text in {"false", "0", "no", "n"}:
        return False
    return None


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO 8601 strings, epoch seconds and ``/Date(ms)/`` literals."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)

    text = str(value).strip()
    match = _MS_DATE_PATTERN.match(text)
    if match:
        return datetime.fromtimestamp(int(match.group(1)) / 1000.0, tz=timezone.utc)

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unable to coerce %r to datetime", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def coerce_str_list(value: Any, separator: Optional[str] = ",") -> List[str]:
    """Normalise a scalar, list or separated string into a list of strings."""

    if value is None:
        return []
    if isinstance(value, str):
        if separator is None:
            return [value.strip()] if value.strip() else []
        return [part.strip() for part in value.split(separator) if part.strip()]
    if isinstance(value, (list, tuple, set)):
        items: List[str] = []
        for entry in value:
            text = coerce_str(entry)
            if text:
                items.append(text)
        return items
    text = coerce_str(value)
    return [text] if text else []


def coerce_float_list(value: Any) -> List[float]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    numbers: List[float] = []
    for entry in value:
        number = coerce_float(entry)
        if number is not None:
            numbers.append(number)
    return numbers

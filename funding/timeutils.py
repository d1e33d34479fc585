import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Union

# Epoch values above this are milliseconds, below are seconds.
MILLIS_THRESHOLD = 10 ** 12

_NUMERIC = re.compile(r"^\d+(\.\d+)?$")

TimestampLike = Union[str, int, float, datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_timestamp(value: TimestampLike) -> datetime:
    """
    Normalize any accepted timestamp shape to an aware UTC datetime.

    Accepts an ISO 8601 string, a numeric string, epoch seconds or epoch
    milliseconds (int or float), or a datetime. Naive datetimes and ISO
    strings without an offset are taken as UTC.
    """
    if isinstance(value, bool):
        raise ValueError("Boolean is not a valid timestamp")

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Timestamp is required")
        if _NUMERIC.match(text):
            try:
                return _from_epoch(Decimal(text))
            except InvalidOperation:
                raise ValueError(f"Invalid timestamp: {value!r}")
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value!r}")
        return coerce_timestamp(parsed)

    if isinstance(value, (int, float)):
        return _from_epoch(Decimal(str(value)))

    raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")


def _from_epoch(number: Decimal) -> datetime:
    if not number.is_finite() or number <= 0:
        raise ValueError("Epoch timestamp must be positive")
    seconds = number / 1000 if number > MILLIS_THRESHOLD else number
    try:
        return datetime.fromtimestamp(float(seconds), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise ValueError(f"Epoch timestamp out of range: {number}")


def isoformat_utc(value: TimestampLike) -> str:
    return coerce_timestamp(value).isoformat().replace("+00:00", "Z")

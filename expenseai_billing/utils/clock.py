"""
Time helpers.

All persisted timestamps are naive UTC datetimes. Provider payloads carry
epoch seconds (card billing), epoch milliseconds (store aggregator
webhooks) or ISO-8601 strings (store aggregator REST API); everything is
normalized here before it reaches the domain. Values that cannot be read
raise ``ValidationError``.
"""

from datetime import datetime, timezone

from expenseai_billing.errors import ValidationError


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _from_epoch(seconds, raw):
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValidationError(f"Timestamp out of range: {raw!r}") from exc


def from_timestamp(seconds):
    if seconds is None or seconds == "":
        return None
    try:
        value = int(seconds)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid epoch timestamp: {seconds!r}") from exc
    return _from_epoch(value, seconds)


def from_millis(millis):
    if millis is None or millis == "":
        return None
    try:
        value = int(millis)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid epoch milliseconds: {millis!r}") from exc
    return _from_epoch(value / 1000.0, millis)


def parse_iso8601(value):
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid ISO-8601 timestamp: {value!r}") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def isoformat(value):
    """Render a naive UTC datetime for API responses."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")

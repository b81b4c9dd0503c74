from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: object) -> datetime | None:
    """Accept datetimes or ISO-8601 strings; naive values are read as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(raw))


def parse_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        parsed = value
    else:
        raw = str(value).strip()
        if not raw:
            return None
        try:
            parsed = Decimal(raw)
        except InvalidOperation as exc:
            raise ValueError(f"invalid decimal: {raw!r}") from exc
    # NaN and Infinity cannot be compared or stored as amounts.
    if not parsed.is_finite():
        raise ValueError(f"non-finite decimal: {value!r}")
    return parsed


def format_decimal(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(value)

"""
Helpers for reading Stripe objects.

Webhook payloads, SDK responses and test fixtures arrive as StripeObject
instances or plain dicts. Reading them through these helpers keeps the
resolvers independent of which one they were given. Note that ``items`` must
be read by key: on a dict, ``.items`` is the mapping method.
"""

from datetime import UTC, datetime
from typing import Any


def get_value(obj: Any, attr: str, default: Any = None) -> Any:
    """Safely extract a field from a Stripe object (dict-like or attribute-based)."""
    if obj is None:
        return default

    if isinstance(obj, dict):
        value = obj.get(attr, default)
        return default if value is None else value

    try:
        value = obj[attr]
    except (KeyError, TypeError, IndexError, AttributeError):
        value = getattr(obj, attr, default)

    return default if value is None else value


def get_id(value: Any) -> str | None:
    """Return the id of an expandable field, which is either an id string or an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return get_value(value, "id")


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    """Convert Stripe metadata object into a plain dictionary."""
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    try:
        return dict(metadata)
    except (TypeError, ValueError):
        return {}


def first_subscription_item(subscription: Any) -> Any:
    items = get_value(subscription, "items")
    data = get_value(items, "data") or []
    return data[0] if data else None


def subscription_price_id(subscription: Any) -> str | None:
    """Price id of the first subscription item (subscriptions here have exactly one)."""
    item = first_subscription_item(subscription)
    return get_id(get_value(item, "price"))


def subscription_period(subscription: Any) -> tuple[int | None, int | None]:
    """
    Current billing period as (start, end) unix timestamps.

    Newer Stripe API versions only expose the period on subscription items, so
    fall back to the first item when the subscription itself has none.
    """
    start = get_value(subscription, "current_period_start")
    end = get_value(subscription, "current_period_end")
    if start is None or end is None:
        item = first_subscription_item(subscription)
        start = start if start is not None else get_value(item, "current_period_start")
        end = end if end is not None else get_value(item, "current_period_end")
    return start, end


def timestamp_to_datetime(timestamp: int | None) -> datetime | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=UTC)


def timestamp_to_iso(timestamp: int | None) -> str | None:
    """Unix seconds -> ISO-8601 UTC string with millisecond precision and a Z suffix."""
    dt = timestamp_to_datetime(timestamp)
    return format_iso(dt) if dt else None


def timestamp_to_date(timestamp: int | None) -> str | None:
    """Unix seconds -> ``YYYY-MM-DD`` (UTC)."""
    dt = timestamp_to_datetime(timestamp)
    return dt.date().isoformat() if dt else None


def format_iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return format_iso(datetime.now(UTC))

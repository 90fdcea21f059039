"""Usage period (accounting bucket) computation.

Every usage row is keyed by ``(api_key_id, period)``.  The period is either
a UTC calendar month (``2024-01``) or, for paid keys that carry a
subscription window, a cycle token built from both window bounds::

    cycle:2024-01-15T00:00:00Z_2024-02-15T00:00:00Z

A renewed subscription gets a new window and therefore a fresh bucket, even
in the middle of a calendar month.  The functions here are pure: the same
key, plan and minute always produce the same token, because the token is
used both to create and to look up the ledger row.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

FREE_PLAN_SLUG = "free"
CYCLE_TOKEN_PREFIX = "cycle:"


def _as_utc(value: Any) -> datetime | None:
    """Coerce *value* to an aware UTC datetime, or ``None`` if it is unusable."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _iso_z(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def is_free_plan(plan: Any) -> bool:
    """Return ``True`` for the free tier (explicit flag or sentinel slug)."""
    if plan is None:
        return False
    if getattr(plan, "is_free", False):
        return True
    return getattr(plan, "plan_slug", None) == FREE_PLAN_SLUG


def current_month(now: datetime | None = None) -> str:
    """Return the UTC calendar month of *now* as ``YYYY-MM``."""
    now = _as_utc(now) or datetime.now(UTC)
    return f"{now.year:04d}-{now.month:02d}"


def month_window(now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of the UTC calendar month containing *now*."""
    now = _as_utc(now) or datetime.now(UTC)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def cycle_token(valid_from: datetime, valid_until: datetime) -> str:
    """Build the deterministic bucket token for a subscription window."""
    return f"{CYCLE_TOKEN_PREFIX}{_iso_z(valid_from)}_{_iso_z(valid_until)}"


def usage_period(key: Any, plan: Any, now: datetime | None = None) -> str:
    """Return the usage period key for *key* under *plan*.

    Parameters
    ----------
    key:
        Any object exposing ``valid_from`` / ``valid_until`` (an
        :class:`~meter_core.state.tables.ApiKeyTable` row in practice).
    plan:
        The key's plan, or ``None``.
    now:
        Reference instant for the calendar-month fallback.

    Returns
    -------
    str
        ``YYYY-MM`` for free plans and keys without a complete window,
        otherwise a ``cycle:`` token.
    """
    if is_free_plan(plan):
        return current_month(now)

    valid_from = _as_utc(getattr(key, "valid_from", None))
    valid_until = _as_utc(getattr(key, "valid_until", None))
    if valid_from is not None and valid_until is not None:
        return cycle_token(valid_from, valid_until)

    return current_month(now)

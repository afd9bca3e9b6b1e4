from __future__ import annotations

from datetime import date, datetime, timezone as dt_timezone

import pytz
from flask import current_app, has_app_context

DEFAULT_TIMEZONE = "UTC"


class TimezoneUtils:
    """UTC storage helpers plus store-local business dates."""

    @staticmethod
    def utc_now() -> datetime:
        """Current timestamp in UTC (always timezone-aware)."""
        return datetime.now(dt_timezone.utc)

    @staticmethod
    def validate_timezone(tz_name: str | None) -> bool:
        return bool(tz_name) and tz_name in pytz.all_timezones_set

    @staticmethod
    def store_timezone() -> str:
        if has_app_context():
            candidate = current_app.config.get("STORE_TIMEZONE")
            if TimezoneUtils.validate_timezone(candidate):
                return candidate
        return DEFAULT_TIMEZONE

    @staticmethod
    def ensure_timezone_aware(dt: datetime | None) -> datetime | None:
        """SQLite hands back naive datetimes; treat them as UTC."""
        if dt is None:
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=dt_timezone.utc)
        return dt

    @staticmethod
    def business_date(dt: datetime | None = None, tz_name: str | None = None) -> date:
        """Calendar date of ``dt`` in the store's timezone."""
        moment = TimezoneUtils.ensure_timezone_aware(dt) or TimezoneUtils.utc_now()
        target = pytz.timezone(tz_name or TimezoneUtils.store_timezone())
        return moment.astimezone(target).date()

    @staticmethod
    def parse_iso(value) -> datetime | None:
        """Parse an ISO-8601 timestamp from a client payload."""
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            return TimezoneUtils.ensure_timezone_aware(value)
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc
        return TimezoneUtils.ensure_timezone_aware(parsed)

    @staticmethod
    def safe_datetime_compare(first: datetime | None, second: datetime | None) -> bool:
        """Return True when ``first`` is strictly later than ``second``."""
        first = TimezoneUtils.ensure_timezone_aware(first)
        second = TimezoneUtils.ensure_timezone_aware(second)
        if first is None:
            return False
        if second is None:
            return True
        return first > second

    @staticmethod
    def format_for_api(dt: datetime | None) -> str | None:
        aware = TimezoneUtils.ensure_timezone_aware(dt)
        return aware.isoformat() if aware else None

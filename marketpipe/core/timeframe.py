"""Timeframe utilities: session-aware, timezone-correct bucketing."""

from __future__ import annotations

from datetime import UTC, datetime, tzinfo
from typing import NamedTuple
from zoneinfo import ZoneInfo

from marketpipe.core.entities import ensure_aware
from marketpipe.infra.providers.exceptions import InputError

__all__ = [
    "Interval",
    "IntervalConfig",
    "CANONICAL_INTERVALS",
    "bucket_id",
    "floor_to_bucket",
    "get_zone",
    "normalize_resolution",
]

MINUTES_PER_DAY = 1440


class Interval(NamedTuple):
    """Bucket width configuration."""

    minutes: int
    name: str

    @property
    def seconds(self) -> int:
        """Total seconds in this interval."""
        return self.minutes * 60

    @property
    def is_daily(self) -> bool:
        return self.minutes >= MINUTES_PER_DAY

    def floor(self, timestamp: datetime, tz: str | tzinfo = "UTC") -> datetime:
        """Get start of the bucket containing the given timestamp.

        Example:
            >>> IntervalConfig.H1.floor(datetime(2024, 1, 1, 10, 30, tzinfo=UTC))
            datetime.datetime(2024, 1, 1, 10, 0, tzinfo=zoneinfo.ZoneInfo(key='UTC'))
        """
        return floor_to_bucket(timestamp, self, tz)

    def __str__(self) -> str:
        """Human-readable string representation."""
        return self.name


class IntervalConfig:
    """Canonical intervals understood by every provider."""

    M1 = Interval(1, "1m")
    M5 = Interval(5, "5m")
    M10 = Interval(10, "10m")
    M15 = Interval(15, "15m")
    M30 = Interval(30, "30m")
    H1 = Interval(60, "1h")
    H4 = Interval(240, "4h")
    D1 = Interval(MINUTES_PER_DAY, "1d")


CANONICAL_INTERVALS: dict[str, Interval] = {
    interval.name: interval
    for interval in (
        IntervalConfig.M1,
        IntervalConfig.M5,
        IntervalConfig.M10,
        IntervalConfig.M15,
        IntervalConfig.M30,
        IntervalConfig.H1,
        IntervalConfig.H4,
        IntervalConfig.D1,
    )
}

# Vendor and UI spellings of the canonical set.
_RESOLUTION_ALIASES: dict[str, str] = {
    "1": "1m",
    "1min": "1m",
    "5": "5m",
    "5min": "5m",
    "10": "10m",
    "10min": "10m",
    "15": "15m",
    "15min": "15m",
    "30": "30m",
    "30min": "30m",
    "60": "1h",
    "60m": "1h",
    "60min": "1h",
    "1hour": "1h",
    "240": "4h",
    "240m": "4h",
    "4hour": "4h",
    "d": "1d",
    "1day": "1d",
    "day": "1d",
    "daily": "1d",
}


def normalize_resolution(resolution: str | Interval) -> Interval:
    """Canonicalize a textual resolution token.

    Args:
        resolution: Token such as ``"1"``, ``"5m"``, ``"60"``, ``"1h"`` or
            ``"D"``, or an ``Interval`` which is returned unchanged.

    Returns:
        The canonical ``Interval``.

    Raises:
        InputError: If the token is unknown or finer than one minute.
    """
    if isinstance(resolution, Interval):
        if resolution.name not in CANONICAL_INTERVALS:
            raise InputError(f"Unsupported resolution: {resolution}")
        return resolution
    if not isinstance(resolution, str) or not resolution.strip():
        raise InputError(f"Unsupported resolution: {resolution!r}")

    token = resolution.strip()
    lowered = token.lower()
    # "1M" is a month in most vendor APIs, not a minute.
    if token == "1M":
        raise InputError("Monthly resolution is not supported")
    key = _RESOLUTION_ALIASES.get(lowered, lowered)
    interval = CANONICAL_INTERVALS.get(key)
    if interval is None:
        raise InputError(f"Unsupported resolution: {resolution!r}")
    return interval


_ZONE_CACHE: dict[str, tzinfo] = {}


def get_zone(tz: str | tzinfo) -> tzinfo:
    """Resolve an IANA name into a tzinfo, caching ZoneInfo instances."""
    if not isinstance(tz, str):
        return tz
    zone = _ZONE_CACHE.get(tz)
    if zone is None:
        zone = ZoneInfo(tz)
        _ZONE_CACHE[tz] = zone
    return zone


def floor_to_bucket(
    timestamp: datetime, interval: Interval, tz: str | tzinfo = "UTC"
) -> datetime:
    """Floor an instant to the start of its bucket in the given timezone.

    Daily buckets start at local midnight. Sub-daily buckets floor the local
    minutes-of-day to a multiple of the interval. The bucket start is rebuilt
    from wall-clock components (not offset arithmetic), so every instant in
    the same logical bucket maps to the identical start, including across
    daylight-saving transitions.

    Args:
        timestamp: Any instant; naive values are treated as UTC.
        interval: Target bucket width.
        tz: IANA timezone name or tzinfo.

    Returns:
        Timezone-aware bucket start expressed in ``tz``.

    Example:
        >>> ts = datetime(2024, 3, 8, 14, 37, tzinfo=UTC)
        >>> floor_to_bucket(ts, IntervalConfig.M15, "America/New_York").isoformat()
        '2024-03-08T09:30:00-05:00'
    """
    local = ensure_aware(timestamp).astimezone(get_zone(tz))
    if interval.is_daily:
        return local.replace(hour=0, minute=0, second=0, microsecond=0)

    minutes = local.hour * 60 + local.minute
    floored = (minutes // interval.minutes) * interval.minutes
    return local.replace(
        hour=floored // 60, minute=floored % 60, second=0, microsecond=0
    )


def bucket_id(timestamp: datetime, interval: Interval, tz: str | tzinfo = "UTC") -> int:
    """Epoch seconds of the bucket start, used as a hashable bucket key.

    Local datetimes that compare equal inside one zone (the repeated hour of
    a DST fall-back) still get distinct ids here.
    """
    return int(floor_to_bucket(timestamp, interval, tz).timestamp())


def epoch_to_datetime(seconds: int, tz: str | tzinfo = "UTC") -> datetime:
    """Inverse of ``bucket_id`` expressed in ``tz``."""
    return datetime.fromtimestamp(seconds, tz=UTC).astimezone(get_zone(tz))

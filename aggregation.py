"""
Dashboard aggregation - time/sentiment/source filters and KPI derivation
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from dateutil import parser as date_parser

from marker_store import normalize_sentiment

TIME_RANGES = ("15m", "1h", "today", "all")
SENTIMENT_FILTERS = ("all", "like", "dislike")
COMPARE_SOURCES = ("A", "B")
VELOCITY_WINDOW = timedelta(minutes=15)
MAX_UTC_OFFSET_MINUTES = 14 * 60


class InvalidTimestamp(Exception):
    """A stored record carries a created_at that cannot be read."""


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse a stored timestamp into an aware datetime (naive means UTC).

    Accepts any ISO 8601 form the stores emit, including Postgres'
    trimmed fractions such as ``10:00:00.12345+00:00``.
    """
    if value is None or value == "":
        return None
    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
        else:
            parsed = date_parser.isoparse(str(value).strip())
    except (ValueError, OverflowError, OSError) as e:
        raise InvalidTimestamp(f"Unreadable timestamp {value!r}: {e}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def local_now() -> datetime:
    """Aware current time in the server's zone."""
    return datetime.now().astimezone()


def viewer_now(tz_offset_minutes: Optional[int] = None) -> datetime:
    """Current time in the viewer's zone, so "today" starts at their midnight.

    tz_offset_minutes follows JavaScript's Date.getTimezoneOffset():
    minutes to add to local time to get UTC (Graz in summer is -120).
    Without it the server's zone is used.
    """
    if tz_offset_minutes is None:
        return local_now()
    if abs(tz_offset_minutes) > MAX_UTC_OFFSET_MINUTES:
        raise ValueError(f"Invalid timezone offset: {tz_offset_minutes}")
    return datetime.now(timezone(timedelta(minutes=-tz_offset_minutes)))


def time_window_start(time_range: str, now: datetime) -> Optional[datetime]:
    """Lower bound for a time range, or None when unbounded."""
    if time_range == "15m":
        return now - timedelta(minutes=15)
    if time_range == "1h":
        return now - timedelta(hours=1)
    if time_range == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if time_range in ("all", "", None):
        return None
    raise ValueError(f"Unknown time range: {time_range!r}")


def _created_after(marker: Dict, start: datetime) -> bool:
    created = parse_timestamp(marker.get("created_at"))
    return created is not None and created > start


def filter_markers(
    markers: Iterable[Dict],
    time_range: str = "all",
    sentiment: str = "all",
    source: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Dict]:
    """Apply the dashboard predicates; order is preserved."""
    now = now or local_now()
    start = time_window_start(time_range, now)

    wanted_sentiment = None
    if sentiment and sentiment != "all":
        wanted_sentiment = normalize_sentiment(sentiment)
        if wanted_sentiment is None:
            raise ValueError(f"Unknown sentiment filter: {sentiment!r}")

    if source and source != "all" and source not in COMPARE_SOURCES:
        raise ValueError(f"Unknown compare source: {source!r}")

    result = []
    for m in markers:
        if m.get("deleted_at"):
            continue
        if start is not None and not _created_after(m, start):
            continue
        if wanted_sentiment is not None and m.get("sentiment") != wanted_sentiment:
            continue
        if source and source != "all" and m.get("source") != source:
            continue
        result.append(m)
    return result


def js_round(value: float) -> int:
    """Half-up rounding, matching what the dashboard displays."""
    return int(math.floor(value + 0.5))


def positivity(markers: List[Dict]) -> int:
    total = len(markers)
    if total == 0:
        return 0
    likes = sum(1 for m in markers if m.get("sentiment") == "like")
    return js_round(100.0 * likes / total)


def velocity(markers: Iterable[Dict], now: Optional[datetime] = None) -> int:
    """Submissions created within the last 15 minutes, ignoring other filters."""
    now = now or local_now()
    start = now - VELOCITY_WINDOW
    return sum(1 for m in markers if not m.get("deleted_at") and _created_after(m, start))


def compute_kpis(filtered: List[Dict], all_markers: List[Dict], now: Optional[datetime] = None) -> Dict:
    return {
        "total": len(filtered),
        "positivity": positivity(filtered),
        "velocity": velocity(all_markers, now=now),
    }


def tag_sources(markers_a: Iterable[Dict], markers_b: Iterable[Dict]) -> List[Dict]:
    """Merge two version fetches, tagging each record with where it came from."""
    tagged = [dict(m, source="A") for m in markers_a]
    tagged.extend(dict(m, source="B") for m in markers_b)
    return tagged


def compare_kpis(filtered: List[Dict]) -> Dict[str, Dict]:
    """Per-source totals and positivity. Velocity has no meaning here."""
    kpis = {}
    for source in COMPARE_SOURCES:
        subset = [m for m in filtered if m.get("source") == source]
        kpis[source] = {"total": len(subset), "positivity": positivity(subset)}
    return kpis


def summarize(
    markers: List[Dict],
    time_range: str = "all",
    sentiment: str = "all",
    source: Optional[str] = None,
    compare: bool = False,
    now: Optional[datetime] = None,
) -> Dict:
    """Filtered markers plus the KPIs the dashboard header shows."""
    now = now or local_now()
    filtered = filter_markers(markers, time_range=time_range, sentiment=sentiment, source=source, now=now)
    if compare:
        kpis = compare_kpis(filtered)
    else:
        kpis = compute_kpis(filtered, markers, now=now)
    return {"markers": filtered, "kpis": kpis}

"""
Timeframe resolver -- maps a time phrase to a concrete closed-inclusive
``[start, end]`` range.

Calendar phrases (today, yesterday, this week, this month, this year,
last year, bare month names) snap to period boundaries.  Relative phrases
(last week, last month, last N days/weeks/months/years) are rolling windows
ending at ``now``.  Anything absent or unrecognised falls back to the rolling
30 days ending at ``now``.

Every function takes ``now`` explicitly; nothing here reads the clock.
"""
from __future__ import annotations

import calendar
import re
from datetime import datetime, time, timedelta
from typing import Any, Callable

from dateutil.relativedelta import relativedelta

from src.query_engine.models import TimeRange

DEFAULT_WINDOW_DAYS = 30

MONTHS: dict[str, int] = {
    name.lower(): idx for idx, name in enumerate(calendar.month_name) if name
}


# ── Period helpers ───────────────────────────────────────

def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


def end_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.max)


def anchor_for(now: datetime) -> datetime:
    """Deterministic anchor for a request: the last instant of *now*'s day.

    Questions asked on the same day resolve to identical ranges, so their
    cache fingerprints line up.
    """
    return end_of_day(now)


def _month_range(year: int, month: int) -> TimeRange:
    last_day = calendar.monthrange(year, month)[1]
    return TimeRange(
        start=datetime(year, month, 1),
        end=datetime.combine(datetime(year, month, last_day).date(), time.max),
    )


def _year_range(year: int) -> TimeRange:
    return TimeRange(start=datetime(year, 1, 1), end=datetime.combine(datetime(year, 12, 31).date(), time.max))


def _rolling(now: datetime, delta: timedelta | relativedelta) -> TimeRange:
    try:
        start = now - delta
    except (OverflowError, ValueError):
        # window reaches past year 1: clamp to the earliest representable day
        start = datetime.min
    return TimeRange(start=start, end=now)


def default_range(now: datetime) -> TimeRange:
    return _rolling(now, timedelta(days=DEFAULT_WINDOW_DAYS))


# ── Phrase vocabulary ────────────────────────────────────

def _rolling_n(m: re.Match[str], now: datetime) -> TimeRange:
    n = int(m.group("n"))
    unit = m.group("unit")
    if unit == "day":
        return _rolling(now, timedelta(days=n))
    if unit == "week":
        return _rolling(now, timedelta(weeks=n))
    if unit == "month":
        return _rolling(now, relativedelta(months=n))
    return _rolling(now, relativedelta(years=n))


def _named_month(m: re.Match[str], now: datetime) -> TimeRange:
    month = MONTHS[m.group("month")]
    # Never resolve into the future: a month later than the current one
    # means the most recent past occurrence.
    year = now.year if month <= now.month else now.year - 1
    return _month_range(year, month)


def _this_week(_: re.Match[str], now: datetime) -> TimeRange:
    monday = start_of_day(now) - timedelta(days=now.weekday())
    return TimeRange(start=monday, end=end_of_day(monday + timedelta(days=6)))


def _yesterday(_: re.Match[str], now: datetime) -> TimeRange:
    day = now - timedelta(days=1)
    return TimeRange(start=start_of_day(day), end=end_of_day(day))


_Builder = Callable[[re.Match[str], datetime], TimeRange]

_N = r"(?P<n>\d{1,4})"
_UNIT = r"(?P<unit>day|week|month|year)s?"
_MONTH_NAMES = "|".join(MONTHS)

# (regex, builder) -- matched against lower-cased text
_PHRASES: list[tuple[re.Pattern[str], _Builder]] = [
    (re.compile(rf"\b(?:last|past|previous)\s+{_N}\s+{_UNIT}\b"), _rolling_n),
    (re.compile(r"\b(?:last|past|previous)\s+week\b"), lambda m, now: _rolling(now, timedelta(days=7))),
    (re.compile(r"\b(?:last|past|previous)\s+month\b"), lambda m, now: _rolling(now, relativedelta(months=1))),
    (re.compile(r"\blast\s+year\b"), lambda m, now: _year_range(now.year - 1)),
    (re.compile(r"\bpast\s+year\b"), lambda m, now: _rolling(now, relativedelta(years=1))),
    (re.compile(r"\bthis\s+week\b"), _this_week),
    (re.compile(r"\bthis\s+month\b"), lambda m, now: _month_range(now.year, now.month)),
    (re.compile(r"\bthis\s+year\b"), lambda m, now: _year_range(now.year)),
    (re.compile(r"\b(?:ytd|year\s+to\s+date)\b"), lambda m, now: TimeRange(start=datetime(now.year, 1, 1), end=now)),
    (re.compile(r"\btoday\b"), lambda m, now: TimeRange(start=start_of_day(now), end=end_of_day(now))),
    (re.compile(r"\byesterday\b"), _yesterday),
    (re.compile(rf"\b(?:(?P<prep>in|during|for|of)\s+)?(?P<month>{_MONTH_NAMES})\b"), _named_month),
]

SUPPORTED_PHRASES: list[str] = [
    "last week", "last month", "this month", "last 3 months", "last 6 months",
    "last N days", "last N weeks", "last N months", "this week", "this year",
    "last year", "year to date", "today", "yesterday",
] + [name for name in MONTHS]


def _clean(phrase: Any) -> str:
    if not isinstance(phrase, str):
        return ""
    return " ".join(phrase.lower().split()).strip("?.!,;:")


def _accept(m: re.Match[str]) -> bool:
    # "may" is far more often a verb than a month unless introduced by a preposition.
    groups = m.groupdict()
    return groups.get("month") != "may" or groups.get("prep") is not None


def find_time_phrase(text: Any) -> str | None:
    """Return the leftmost recognised time phrase in *text*, or ``None``."""
    q = _clean(text)
    best: tuple[int, int, str] | None = None
    for pattern, _ in _PHRASES:
        m = next((m for m in pattern.finditer(q) if _accept(m)), None)
        if m is None:
            continue
        candidate = (m.start(), -(m.end() - m.start()), m.group(0))
        if best is None or candidate < best:
            best = candidate
    return best[2] if best else None


def resolve(phrase: str | None, now: datetime) -> TimeRange:
    """Resolve *phrase* against *now*; unknown or missing phrases use the default window."""
    q = _clean(phrase)
    if q:
        for pattern, build in _PHRASES:
            m = pattern.fullmatch(q)
            if m is not None:
                return build(m, now)
    return default_range(now)


def describe(timeframe: TimeRange) -> str:
    """Human label for a range, e.g. ``from Sep 17, 2026 to Oct 17, 2026``."""
    start, end = timeframe.start, timeframe.end
    if start.date() == end.date():
        return f"on {_fmt(start)}"
    return f"from {_fmt(start)} to {_fmt(end)}"


def _fmt(moment: datetime) -> str:
    return f"{moment:%b} {moment.day}, {moment.year}"

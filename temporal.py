"""Temporal resolution: natural date expressions to absolute dates and ranges.

All computation is relative to an explicit reference date. ``reference_date``
is the only place "today" is derived from the wall clock.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'search.log')

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')

_ISO_DATE = re.compile(r'\b(\d{4}-\d{2}-\d{2})\b')
_WEEKDAY = re.compile(r'\b(next\s+|this\s+|coming\s+)?(' + '|'.join(WEEKDAYS) + r')\b')
_IN_DAYS = re.compile(r'\bin\s+(\d{1,3})\s+days?\b')


@dataclass
class DateRange:
    """Resolved range. ``start is None`` means the query is not temporal."""
    start: Optional[date] = None
    end: Optional[date] = None
    is_range: bool = False
    confidence: float = 0.0
    source: str = 'none'

    @property
    def has_date(self) -> bool:
        return self.start is not None

    @classmethod
    def single(cls, day: date, confidence: float = 1.0, source: str = 'rule') -> 'DateRange':
        return cls(start=day, end=day, is_range=False, confidence=confidence, source=source)

    @classmethod
    def span(cls, start: date, end: date, confidence: float = 1.0, source: str = 'rule') -> 'DateRange':
        if end <= start:
            return cls.single(start, confidence, source)
        return cls(start=start, end=end, is_range=True, confidence=confidence, source=source)


def reference_date(client_date: Optional[date] = None, tz_name: Optional[str] = None) -> date:
    """The caller's "today": their supplied date, else the clock in the configured timezone."""
    if client_date is not None:
        return client_date
    return datetime.now(ZoneInfo(tz_name or settings.TIMEZONE)).date()


def _last_day_of_month(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def _first_of_next_month(day: date) -> date:
    return _last_day_of_month(day) + timedelta(days=1)


def _following_monday(today: date) -> date:
    return today + timedelta(days=7 - today.weekday())


def _weekend(today: date) -> DateRange:
    # Saturday and Sunday of the current week; on Sunday only today is left
    if today.weekday() == 6:
        return DateRange.single(today)
    saturday = today + timedelta(days=max(0, 5 - today.weekday()))
    return DateRange.span(saturday, saturday + timedelta(days=1))


def resolve_rules(query: str, today: date) -> Optional[DateRange]:
    """Deterministic fast paths. Returns None when no known expression matches.

    Args:
        query: Free-form user text
        today: Reference date

    Returns:
        DateRange or None
    """
    text = query.lower()

    iso = _ISO_DATE.search(text)
    if iso:
        try:
            return DateRange.single(date.fromisoformat(iso.group(1)))
        except ValueError:
            pass

    offset = _IN_DAYS.search(text)
    if offset:
        return DateRange.single(today + timedelta(days=int(offset.group(1))))

    if re.search(r'\bnext\s+weekend\b', text):
        saturday = _following_monday(today) + timedelta(days=5)
        return DateRange.span(saturday, saturday + timedelta(days=1))

    if re.search(r'\b(this\s+)?weekend\b', text):
        return _weekend(today)

    if re.search(r'\bnext\s+week\b', text):
        monday = _following_monday(today)
        return DateRange.span(monday, monday + timedelta(days=6))

    if re.search(r'\bthis\s+week\b', text):
        return DateRange.span(today, today + timedelta(days=6 - today.weekday()))

    if re.search(r'\bnext\s+month\b', text):
        first = _first_of_next_month(today)
        return DateRange.span(first, _last_day_of_month(first))

    if re.search(r'\bthis\s+month\b', text):
        return DateRange.span(today, _last_day_of_month(today))

    if re.search(r'\bday\s+after\s+tomorrow\b', text):
        return DateRange.single(today + timedelta(days=2))

    if re.search(r'\btomorrow\b', text):
        return DateRange.single(today + timedelta(days=1))

    if re.search(r'\byesterday\b', text):
        return DateRange.single(today - timedelta(days=1))

    weekday = _WEEKDAY.search(text)
    if weekday:
        qualifier = (weekday.group(1) or '').strip()
        target = WEEKDAYS.index(weekday.group(2))
        if qualifier == 'next':
            # that weekday in the following Monday-Sunday week
            return DateRange.single(_following_monday(today) + timedelta(days=target))
        delta = (target - today.weekday()) % 7
        if delta == 0 and not re.search(r'\btoday\b', text):
            delta = 7
        return DateRange.single(today + timedelta(days=delta))

    if re.search(r'\b(today|tonight)\b', text):
        return DateRange.single(today)

    return None


def _extraction_prompt(today: date) -> str:
    tomorrow = today + timedelta(days=1)
    full_today = f"{today:%A}, {today:%B} {today.day}, {today.year} ({today.isoformat()})"
    return f"""You are a date extraction tool. Today is {full_today}.

INSTRUCTIONS:
1. Identify if the user query refers to a specific date, a relative day, or a range.
2. Calculate the exact dates in YYYY-MM-DD format.
3. "this week" is today until the coming Sunday; "next week" is next Monday to next Sunday.
4. A bare weekday is its next occurrence after today; "next <weekday>" is that weekday in the following week.
5. Return ONLY a JSON object.

EXAMPLES:
- "today" -> startDate: {today.isoformat()}, endDate: {today.isoformat()}
- "tomorrow" -> startDate: {tomorrow.isoformat()}, endDate: {tomorrow.isoformat()}

FORMAT:
{{"startDate": "YYYY-MM-DD", "endDate": "YYYY-MM-DD", "isRange": boolean, "confidence": number}}

If no date is mentioned, return {{"startDate": null}}."""


def _parse_iso(value) -> Optional[date]:
    if not isinstance(value, str) or not re.fullmatch(r'\d{4}-\d{2}-\d{2}', value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


class TemporalResolver:
    """Resolve the date range a query refers to.

    Priority: explicit caller range, then the rule fast paths, then a
    constrained model extraction (when a completion client is configured).
    """

    def __init__(self, completion_client=None):
        self.completion_client = completion_client

    async def resolve(
        self,
        query: str,
        today: date,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> DateRange:
        if start_date is not None:
            logger.info(f"Using caller range {start_date} to {end_date or start_date}")
            return DateRange.span(start_date, end_date or start_date, source='explicit')

        if not query or not query.strip():
            return DateRange()

        ruled = resolve_rules(query, today)
        if ruled is not None:
            return ruled

        if self.completion_client is None:
            return DateRange()

        extracted = await self.completion_client.complete_json(_extraction_prompt(today), query, max_tokens=150)
        logger.info(f"Temporal extraction for '{query}': {extracted}")

        start = _parse_iso(extracted.get('startDate'))
        if start is None:
            return DateRange()
        end = _parse_iso(extracted.get('endDate')) or start
        try:
            confidence = float(extracted.get('confidence', 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        return DateRange.span(start, end, confidence=confidence, source='model')

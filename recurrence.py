# recurrence.py
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import List, Optional, Union

from dateutil.relativedelta import relativedelta

from errors import ValidationError


WEEKDAY_MAP = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}

BYDAY_RE = re.compile(r"BYDAY=([A-Z]{2})")
TIME_OF_DAY_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

# Fallback horizons when no end date is given.
DEFAULT_HORIZON = relativedelta(years=1)
COUNTED_HORIZON = relativedelta(years=2)


class Frequency(str, Enum):
    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


@dataclass(frozen=True)
class Recurrence:
    frequency: Frequency = Frequency.NONE
    weekday: Optional[str] = None  # only used with WEEKLY

    @property
    def is_recurring(self) -> bool:
        return self.frequency is not Frequency.NONE


NO_RECURRENCE = Recurrence()


def _byday(rule: str) -> Optional[str]:
    m = BYDAY_RE.search(rule)
    if m and m.group(1) in WEEKDAY_MAP:
        return m.group(1)
    return None


def parse_rule(text: Optional[str]) -> Recurrence:
    if text is None:
        return NO_RECURRENCE
    rule = str(text).strip().upper()
    if not rule:
        return NO_RECURRENCE

    if "DAILY" in rule:
        return Recurrence(Frequency.DAILY)
    if "WEEKLY" in rule:
        return Recurrence(Frequency.WEEKLY, _byday(rule))
    if "MONTHLY" in rule:
        return Recurrence(Frequency.MONTHLY)
    return Recurrence(Frequency.WEEKLY, _byday(rule))


def format_rule(recurrence: Recurrence) -> Optional[str]:
    if not recurrence.is_recurring:
        return None
    text = f"FREQ={recurrence.frequency.value}"
    if recurrence.frequency is Frequency.WEEKLY and recurrence.weekday:
        text += f";BYDAY={recurrence.weekday}"
    return text


def canonical_rule(text: Optional[str]) -> Optional[str]:
    return format_rule(parse_rule(text))


def parse_time_of_day(value: Union[str, time]) -> time:
    """Parse a wall-clock "HH:MM" string."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)

    m = TIME_OF_DAY_RE.match((value or "").strip())
    if not m:
        raise ValidationError(f"Invalid time of day: {value!r} (expected HH:MM)")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValidationError(f"Invalid time of day: {value!r} (expected HH:MM)")
    return time(hour, minute)


def first_weekday_on_or_after(start: date, weekday: str) -> date:
    """First date >= start that falls on the given two-letter weekday."""
    wanted = WEEKDAY_MAP[weekday]
    return start + timedelta(days=(wanted - start.weekday()) % 7)


def align_start_date(recurrence: Recurrence, start: date) -> date:
    """Move a weekly start onto its BYDAY weekday; other rules are unchanged."""
    if recurrence.frequency is Frequency.WEEKLY and recurrence.weekday:
        return first_weekday_on_or_after(start, recurrence.weekday)
    return start


def _nth_date(frequency: Frequency, start: date, n: int) -> date:
    if frequency is Frequency.DAILY:
        return start + timedelta(days=n)
    if frequency is Frequency.MONTHLY:
        # relativedelta clamps to the last day of short months, always
        # counted from the original start so the day-of-month recovers.
        return start + relativedelta(months=n)
    return start + timedelta(days=7 * n)


def _as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def generate_occurrence_dates(
    recurrence: Recurrence,
    start_date: Union[date, datetime],
    start_time: Union[str, time],
    end_bound: Union[date, datetime, None] = None,
    count_cap: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[datetime]:
    """The first instant is always returned; later ones only if not past."""
    if now is None:
        now = datetime.now()
    start_date = _as_date(start_date)
    start_time = parse_time_of_day(start_time)

    if not recurrence.is_recurring:
        return [datetime.combine(start_date, start_time)]

    if end_bound is not None:
        last_day = _as_date(end_bound)
    elif count_cap:
        # TODO: confirm with product whether counted series should share the one-year horizon
        last_day = start_date + COUNTED_HORIZON
    else:
        last_day = start_date + DEFAULT_HORIZON

    out = []
    step = 0
    current = start_date
    while current <= last_day:
        if count_cap and len(out) >= count_cap:
            break

        instant = datetime.combine(current, start_time)
        if step == 0 or instant >= now:
            out.append(instant)

        step += 1
        current = _nth_date(recurrence.frequency, start_date, step)

    return out

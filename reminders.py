# reminders.py
import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from sqlalchemy.orm import Session

from db import insert_or_ignore, transaction
from models import (
    OCCURRENCE_SCHEDULED,
    ROLE_ATHLETE,
    RSVP,
    RSVP_NOT_GOING,
    Event,
    EventOccurrence,
    ReminderLog,
    User,
)

logger = logging.getLogger(__name__)

SPLIT_RE = re.compile(r"[,;\s]+")
MINUTES_PER_DAY = 24 * 60
MINUTE_GRANULARITY = 5
# longest lead time accepted, in days
MAX_REMINDER_DAYS = 366


def _to_number(item: Any):
    if isinstance(item, bool):
        return None
    if isinstance(item, str):
        item = item.strip().strip("'\"")
    try:
        value = float(item)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0 or value > MAX_REMINDER_DAYS:
        return None
    return int(value) if value.is_integer() else value


def normalize_reminder_days(raw: Any) -> List[float]:
    """Accept a JSON array string, a list, or a loose "[7, 1]" literal."""
    if raw is None:
        return []

    items = raw
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        try:
            items = json.loads(text)
        except ValueError:
            items = [p for p in SPLIT_RE.split(text.strip("[]{}() ")) if p]
    if not isinstance(items, (list, tuple, set)):
        items = [items]

    values = {v for v in (_to_number(i) for i in items) if v is not None}
    return sorted(values, reverse=True)


def _sub_day_minutes(days: float) -> int:
    minutes = days * MINUTES_PER_DAY / MINUTE_GRANULARITY
    return max(MINUTE_GRANULARITY, int(round(minutes)) * MINUTE_GRANULARITY)


def lead_time(days: float) -> timedelta:
    if float(days).is_integer():
        return timedelta(days=int(days))
    return timedelta(minutes=_sub_day_minutes(days))


def reminder_type(days: float) -> str:
    """Dedup label for a lead time, e.g. "7_day" or "30_min"."""
    if float(days).is_integer():
        return f"{int(days)}_day"
    return f"{_sub_day_minutes(days)}_min"


@dataclass(frozen=True)
class DueReminder:
    occurrence_id: int
    user_id: int
    reminder_type: str
    event_id: int
    event_title: str
    occurrence_date: datetime
    trigger_at: datetime


@dataclass
class ReminderRunResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class Notifier(Protocol):
    def send_reminder(self, reminder: DueReminder) -> None:
        ...

    def send_cancellation(self, occurrence: EventOccurrence, user_ids: List[int]) -> None:
        ...


class LoggingNotifier:
    """Default notifier: delivery happens elsewhere, we only log."""

    def send_reminder(self, reminder: DueReminder) -> None:
        logger.info(
            "Reminder %s for occurrence %s (%s) to user %s",
            reminder.reminder_type,
            reminder.occurrence_id,
            reminder.event_title,
            reminder.user_id,
        )

    def send_cancellation(self, occurrence: EventOccurrence, user_ids: List[int]) -> None:
        logger.info(
            "Cancellation of occurrence %s sent to %d users", occurrence.id, len(user_ids)
        )


def _recipients_by_gym(db: Session, gym_ids: Set[int]) -> Dict[int, List[int]]:
    out: Dict[int, List[int]] = {gym_id: [] for gym_id in gym_ids}
    if not gym_ids:
        return out
    athletes = (
        db.query(User.id, User.gym_id)
        .filter(User.gym_id.in_(list(gym_ids)), User.role == ROLE_ATHLETE)
        .order_by(User.id.asc())
        .all()
    )
    for user_id, gym_id in athletes:
        out[gym_id].append(user_id)
    return out


def due_reminders(db: Session, now: Optional[datetime] = None) -> List[DueReminder]:
    """Reminders whose trigger time has passed and that were never sent."""
    if now is None:
        now = datetime.now()

    rows = (
        db.query(EventOccurrence, Event)
        .join(Event, EventOccurrence.event_id == Event.id)
        .filter(
            EventOccurrence.status == OCCURRENCE_SCHEDULED,
            EventOccurrence.date > now,
            EventOccurrence.date <= now + timedelta(days=MAX_REMINDER_DAYS),
        )
        .order_by(EventOccurrence.date.asc(), EventOccurrence.id.asc())
        .all()
    )

    candidates: List[Tuple[EventOccurrence, Event, str, datetime]] = []
    for occurrence, event in rows:
        for days in normalize_reminder_days(event.reminder_days):
            trigger_at = occurrence.date - lead_time(days)
            if now >= trigger_at:
                candidates.append((occurrence, event, reminder_type(days), trigger_at))

    if not candidates:
        return []

    occurrence_ids = sorted({occ.id for occ, _, _, _ in candidates})
    sent = {
        (log.occurrence_id, log.user_id, log.reminder_type)
        for log in db.query(ReminderLog).filter(ReminderLog.occurrence_id.in_(occurrence_ids))
    }
    declined = {
        (r.occurrence_id, r.user_id)
        for r in db.query(RSVP).filter(
            RSVP.occurrence_id.in_(occurrence_ids), RSVP.status == RSVP_NOT_GOING
        )
    }
    recipients = _recipients_by_gym(db, {event.gym_id for _, event, _, _ in candidates})

    out = []
    for occurrence, event, kind, trigger_at in candidates:
        for user_id in recipients[event.gym_id]:
            if (occurrence.id, user_id) in declined:
                continue
            if (occurrence.id, user_id, kind) in sent:
                continue
            out.append(
                DueReminder(
                    occurrence_id=occurrence.id,
                    user_id=user_id,
                    reminder_type=kind,
                    event_id=event.id,
                    event_title=event.title,
                    occurrence_date=occurrence.date,
                    trigger_at=trigger_at,
                )
            )
    return out


def record_reminder_sent(db: Session, reminder: DueReminder, now: Optional[datetime] = None) -> bool:
    """Write the dedup row. False if it already existed. Does not commit."""
    row = {
        "occurrence_id": reminder.occurrence_id,
        "user_id": reminder.user_id,
        "reminder_type": reminder.reminder_type,
        "sent_at": now or datetime.now(),
    }
    inserted = insert_or_ignore(
        db, ReminderLog, [row], ["occurrence_id", "user_id", "reminder_type"]
    )
    return inserted > 0


def process_reminders(db: Session, notifier: Notifier, now: Optional[datetime] = None) -> ReminderRunResult:
    """One scheduling pass: deliver everything due and log what succeeded."""
    if now is None:
        now = datetime.now()

    result = ReminderRunResult()
    for reminder in due_reminders(db, now):
        result.processed += 1
        try:
            notifier.send_reminder(reminder)
        except Exception as e:
            logger.warning(
                "Reminder %s for occurrence %s to user %s failed",
                reminder.reminder_type,
                reminder.occurrence_id,
                reminder.user_id,
                exc_info=True,
            )
            result.failed += 1
            result.errors.append(f"{reminder.occurrence_id}:{reminder.user_id}: {e}")
            continue

        with transaction(db):
            if record_reminder_sent(db, reminder, now):
                result.sent += 1

    logger.info(
        "Reminder pass at %s: processed=%d sent=%d failed=%d",
        now.isoformat(),
        result.processed,
        result.sent,
        result.failed,
    )
    return result

# occurrences.py
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendance import cascade_delete_for_occurrences, start_of_day
from db import insert_or_ignore, transaction
from errors import Conflict, InvalidState, NotFound, ValidationError
from models import (
    OCCURRENCE_CANCELED,
    OCCURRENCE_SCHEDULED,
    RSVP,
    RSVP_GOING,
    Event,
    EventOccurrence,
)
from recurrence import (
    Recurrence,
    canonical_rule,
    format_rule,
    generate_occurrence_dates,
    parse_rule,
    parse_time_of_day,
)
from reminders import normalize_reminder_days

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "title",
    "description",
    "location",
    "start_time",
    "end_time",
    "start_date",
    "recurrence_rule",
    "recurrence_end_date",
    "recurrence_count",
    "reminder_days",
)


@dataclass
class ReconcileResult:
    regenerated: bool = False
    deleted: int = 0
    created: int = 0


# ---------- Validation ----------
def _validate_event_fields(fields: dict) -> None:
    title = (fields.get("title") or "").strip()
    if not title or not fields.get("start_time") or not fields.get("end_time"):
        raise ValidationError("Title, start time, and end time are required")

    start_time = parse_time_of_day(fields["start_time"])
    parse_time_of_day(fields["end_time"])

    count = fields.get("recurrence_count")
    if count is not None and count < 1:
        raise ValidationError("Recurrence count must be at least 1")

    end_date = fields.get("recurrence_end_date")
    if end_date is not None:
        start_at = datetime.combine(fields["start_date"], start_time)
        if datetime.combine(end_date, time.min) <= start_at:
            raise ValidationError("The 'End on date' must be after the start date and time")


def _hhmm(value) -> str:
    return parse_time_of_day(value).strftime("%H:%M")


# ---------- Create path ----------
def create_occurrences(
    db: Session,
    event_id: int,
    recurrence: Recurrence,
    start_time,
    start_date: date,
    end_bound: Optional[date] = None,
    count_cap: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Returns the number of new rows. Does not commit."""
    dates = generate_occurrence_dates(
        recurrence, start_date, start_time, end_bound, count_cap, now=now
    )
    return _store_occurrences(db, event_id, dates)


def _store_occurrences(db: Session, event_id: int, dates: List[datetime]) -> int:
    stamp = datetime.now()
    rows = [
        {
            "event_id": event_id,
            "date": d,
            "status": OCCURRENCE_SCHEDULED,
            "is_custom": False,
            "created_at": stamp,
            "updated_at": stamp,
        }
        for d in dates
    ]
    inserted = insert_or_ignore(db, EventOccurrence, rows, ["event_id", "date"])
    if inserted < len(rows):
        logger.debug(
            "Event %s: %d of %d occurrences already existed",
            event_id,
            len(rows) - inserted,
            len(rows),
        )
    return inserted


def create_event(db: Session, gym_id: int, fields: dict, now: Optional[datetime] = None) -> Tuple[Event, int]:
    """Store a new event and its occurrences in one transaction."""
    if now is None:
        now = datetime.now()
    fields = dict(fields)
    if not fields.get("start_date"):
        fields["start_date"] = now.date()
    _validate_event_fields(fields)

    recurrence = parse_rule(fields.get("recurrence_rule"))

    with transaction(db):
        event = Event(
            gym_id=gym_id,
            title=fields["title"].strip(),
            description=fields.get("description") or None,
            location=fields.get("location") or None,
            start_time=_hhmm(fields["start_time"]),
            end_time=_hhmm(fields["end_time"]),
            start_date=fields["start_date"],
            recurrence_rule=format_rule(recurrence),
            recurrence_end_date=fields.get("recurrence_end_date"),
            recurrence_count=fields.get("recurrence_count"),
            reminder_days=normalize_reminder_days(fields.get("reminder_days")) or None,
        )
        db.add(event)
        db.flush()

        created = create_occurrences(
            db,
            event.id,
            recurrence,
            event.start_time,
            event.start_date,
            event.recurrence_end_date,
            event.recurrence_count,
            now=now,
        )

    db.refresh(event)
    logger.info("Created event %s (%s) with %d occurrences", event.id, event.recurrence_rule, created)
    return event, created


# ---------- Edit path ----------
def _recurrence_changed(event: Event, merged: dict) -> bool:
    return (
        canonical_rule(merged["recurrence_rule"]) != canonical_rule(event.recurrence_rule)
        or _hhmm(merged["start_time"]) != event.start_time
        or merged["recurrence_end_date"] != event.recurrence_end_date
        or merged["start_date"] != event.start_date
        or merged["recurrence_count"] != event.recurrence_count
    )


def reconcile_on_edit(db: Session, event: Event, changes: dict, now: Optional[datetime] = None) -> ReconcileResult:
    """Apply an edit and rebuild occurrences from today on if the recurrence moved."""
    if now is None:
        now = datetime.now()

    merged = {name: getattr(event, name) for name in EDITABLE_FIELDS}
    merged.update({k: v for k, v in changes.items() if k in EDITABLE_FIELDS})
    if merged.get("start_date") is None:
        merged["start_date"] = event.start_date
    _validate_event_fields(merged)

    regenerate = _recurrence_changed(event, merged)
    recurrence = parse_rule(merged["recurrence_rule"])
    result = ReconcileResult()

    with transaction(db):
        event.title = merged["title"].strip()
        event.description = merged["description"] or None
        event.location = merged["location"] or None
        event.start_time = _hhmm(merged["start_time"])
        event.end_time = _hhmm(merged["end_time"])
        event.start_date = merged["start_date"]
        event.recurrence_rule = format_rule(recurrence)
        event.recurrence_end_date = merged["recurrence_end_date"]
        event.recurrence_count = merged["recurrence_count"]
        event.reminder_days = normalize_reminder_days(merged["reminder_days"]) or None

        if regenerate:
            today = start_of_day(now)
            future_ids = [
                occ_id
                for (occ_id,) in db.query(EventOccurrence.id).filter(
                    EventOccurrence.event_id == event.id,
                    EventOccurrence.date >= today,
                )
            ]
            cascade_delete_for_occurrences(db, future_ids)
            if future_ids:
                result.deleted = (
                    db.query(EventOccurrence)
                    .filter(EventOccurrence.id.in_(future_ids))
                    .delete(synchronize_session=False)
                )

            dates = generate_occurrence_dates(
                recurrence,
                event.start_date,
                event.start_time,
                event.recurrence_end_date,
                event.recurrence_count,
                now=now,
            )
            # history is kept: no second session on a past day that already has one
            past = db.query(EventOccurrence.date, EventOccurrence.is_custom).filter(
                EventOccurrence.event_id == event.id,
                EventOccurrence.date < today,
            ).all()
            past_days = {d.date() for d, _ in past}
            dates = [d for d in dates if d >= today or d.date() not in past_days]

            # kept pattern sessions use up part of the count
            if event.recurrence_count:
                kept = sum(1 for _, is_custom in past if not is_custom)
                dates = dates[:max(0, event.recurrence_count - kept)]

            result.created = _store_occurrences(db, event.id, dates)
            result.regenerated = True

    db.refresh(event)
    if result.regenerated:
        logger.info(
            "Event %s regenerated: deleted=%d created=%d",
            event.id,
            result.deleted,
            result.created,
        )
    return result


# ---------- Lookup ----------
def get_event(db: Session, gym_id: int, event_id: int) -> Event:
    event = db.query(Event).filter(Event.id == event_id, Event.gym_id == gym_id).first()
    if not event:
        raise NotFound("Event not found")
    return event


def get_occurrence(db: Session, gym_id: int, occurrence_id: int) -> EventOccurrence:
    occurrence = (
        db.query(EventOccurrence)
        .join(Event, EventOccurrence.event_id == Event.id)
        .filter(EventOccurrence.id == occurrence_id, Event.gym_id == gym_id)
        .first()
    )
    if not occurrence:
        raise NotFound("Occurrence not found")
    return occurrence


def list_occurrences(
    db: Session,
    event_id: int,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
) -> List[EventOccurrence]:
    q = db.query(EventOccurrence).filter(EventOccurrence.event_id == event_id)

    if from_date:
        q = q.filter(EventOccurrence.date >= datetime.combine(from_date, time.min))
    if to_date:
        q = q.filter(EventOccurrence.date <= datetime.combine(to_date, time.max))

    return q.order_by(EventOccurrence.date.asc()).all()


def list_events(
    db: Session, gym_id: int, now: Optional[datetime] = None, upcoming_limit: int = 10
) -> List[Tuple[Event, List[EventOccurrence]]]:
    """Events of a gym, newest first, each with its next few occurrences."""
    if now is None:
        now = datetime.now()

    events = (
        db.query(Event)
        .filter(Event.gym_id == gym_id)
        .order_by(Event.created_at.desc(), Event.id.desc())
        .all()
    )
    out = []
    for event in events:
        upcoming = (
            db.query(EventOccurrence)
            .filter(EventOccurrence.event_id == event.id, EventOccurrence.date >= now)
            .order_by(EventOccurrence.date.asc())
            .limit(upcoming_limit)
            .all()
        )
        out.append((event, upcoming))
    return out


def delete_event(db: Session, gym_id: int, event_id: int) -> int:
    """Delete an event with all its occurrences and their attendance."""
    event = get_event(db, gym_id, event_id)

    with transaction(db):
        ids = [
            occ_id
            for (occ_id,) in db.query(EventOccurrence.id).filter(EventOccurrence.event_id == event.id)
        ]
        cascade_delete_for_occurrences(db, ids)
        if ids:
            db.query(EventOccurrence).filter(EventOccurrence.id.in_(ids)).delete(
                synchronize_session=False
            )
        db.query(Event).filter(Event.id == event.id).delete(synchronize_session=False)

    logger.info("Deleted event %s with %d occurrences", event_id, len(ids))
    return len(ids)


# ---------- Cancel / restore ----------
def _set_status(db: Session, gym_id: int, occurrence_id: int, status: str) -> Tuple[EventOccurrence, bool]:
    occurrence = get_occurrence(db, gym_id, occurrence_id)
    if occurrence.status == status:
        return occurrence, False

    with transaction(db):
        occurrence.status = status
    db.refresh(occurrence)
    logger.info("Occurrence %s is now %s", occurrence.id, status)
    return occurrence, True


def cancel_occurrence(db: Session, gym_id: int, occurrence_id: int) -> Tuple[EventOccurrence, bool]:
    """Mark an occurrence canceled. Returns (occurrence, changed)."""
    return _set_status(db, gym_id, occurrence_id, OCCURRENCE_CANCELED)


def restore_occurrence(db: Session, gym_id: int, occurrence_id: int) -> Tuple[EventOccurrence, bool]:
    return _set_status(db, gym_id, occurrence_id, OCCURRENCE_SCHEDULED)


def going_user_ids(db: Session, occurrence_id: int) -> List[int]:
    return [
        user_id
        for (user_id,) in db.query(RSVP.user_id)
        .filter(RSVP.occurrence_id == occurrence_id, RSVP.status == RSVP_GOING)
        .order_by(RSVP.user_id.asc())
    ]


# ---------- Custom occurrences ----------
def add_custom_occurrence(
    db: Session,
    gym_id: int,
    event_id: int,
    when: Union[date, datetime],
    note: Optional[str] = None,
) -> EventOccurrence:
    event = get_event(db, gym_id, event_id)
    if not isinstance(when, datetime):
        when = datetime.combine(when, parse_time_of_day(event.start_time))

    # one occurrence per calendar day
    day_start = datetime.combine(when.date(), time.min)
    exists = (
        db.query(EventOccurrence)
        .filter(
            EventOccurrence.event_id == event.id,
            EventOccurrence.date >= day_start,
            EventOccurrence.date < day_start + timedelta(days=1),
        )
        .first()
    )
    if exists:
        raise Conflict("Occurrence already exists for this date")

    occurrence = EventOccurrence(
        event_id=event.id,
        date=when,
        status=OCCURRENCE_SCHEDULED,
        is_custom=True,
        note=note or None,
    )
    try:
        with transaction(db):
            db.add(occurrence)
    except IntegrityError:
        raise Conflict("Occurrence already exists for this date")

    db.refresh(occurrence)
    logger.info("Added custom occurrence %s to event %s on %s", occurrence.id, event.id, when)
    return occurrence


def remove_custom_occurrence(db: Session, gym_id: int, occurrence_id: int) -> None:
    occurrence = get_occurrence(db, gym_id, occurrence_id)
    if not occurrence.is_custom:
        raise InvalidState("Only custom occurrences can be deleted. Use cancel for recurring ones.")

    with transaction(db):
        cascade_delete_for_occurrences(db, [occurrence.id])
        db.query(EventOccurrence).filter(EventOccurrence.id == occurrence.id).delete(
            synchronize_session=False
        )
    logger.info("Removed custom occurrence %s", occurrence_id)

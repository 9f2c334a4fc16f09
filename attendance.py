# attendance.py
import logging
from datetime import datetime, time
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import transaction
from errors import InvalidState, NotFound, ValidationError
from models import (
    OCCURRENCE_CANCELED,
    RSVP,
    RSVP_GOING,
    RSVP_NOT_GOING,
    EventOccurrence,
    ReminderLog,
)

logger = logging.getLogger(__name__)

RSVP_STATUSES = (RSVP_GOING, RSVP_NOT_GOING)


def start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min)


def cascade_delete_for_occurrences(db: Session, occurrence_ids: Iterable[int]) -> int:
    """Delete attendance rows for occurrences that are about to be removed.

    Must run before the occurrences themselves are deleted. Reminder logs go
    with them. Does not commit; the caller owns the transaction.
    """
    ids = list(occurrence_ids)
    if not ids:
        return 0

    removed = (
        db.query(RSVP)
        .filter(RSVP.occurrence_id.in_(ids))
        .delete(synchronize_session=False)
    )
    db.query(ReminderLog).filter(ReminderLog.occurrence_id.in_(ids)).delete(
        synchronize_session=False
    )
    if removed:
        logger.info("Removed %d RSVPs for %d occurrences", removed, len(ids))
    return removed


def _apply_rsvp(db: Session, user_id: int, occurrence_id: int, status: str, updated_by: Optional[int]) -> RSVP:
    rsvp = (
        db.query(RSVP)
        .filter(RSVP.user_id == user_id, RSVP.occurrence_id == occurrence_id)
        .first()
    )
    if rsvp:
        rsvp.status = status
        rsvp.updated_by = updated_by
    else:
        rsvp = RSVP(
            user_id=user_id,
            occurrence_id=occurrence_id,
            status=status,
            updated_by=updated_by,
        )
        db.add(rsvp)
    db.flush()
    return rsvp


def upsert_rsvp(
    db: Session,
    user_id: int,
    occurrence_id: int,
    status: str = RSVP_GOING,
    updated_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> RSVP:
    """Create or update one user's answer for one occurrence."""
    if status not in RSVP_STATUSES:
        raise ValidationError(f"Invalid RSVP status: {status!r}")
    if now is None:
        now = datetime.now()

    occurrence = db.query(EventOccurrence).filter(EventOccurrence.id == occurrence_id).first()
    if not occurrence:
        raise NotFound("Event occurrence not found")
    if occurrence.date < start_of_day(now):
        raise InvalidState("Cannot RSVP to past events")
    if occurrence.status == OCCURRENCE_CANCELED:
        raise InvalidState("Event has been canceled")

    try:
        with transaction(db):
            rsvp = _apply_rsvp(db, user_id, occurrence_id, status, updated_by)
    except IntegrityError:
        # a concurrent request inserted the same (user, occurrence) first
        logger.debug("RSVP insert raced for user %s occurrence %s", user_id, occurrence_id)
        with transaction(db):
            rsvp = _apply_rsvp(db, user_id, occurrence_id, status, updated_by)

    db.refresh(rsvp)
    return rsvp


def list_rsvps(db: Session, occurrence_id: int) -> List[RSVP]:
    return (
        db.query(RSVP)
        .filter(RSVP.occurrence_id == occurrence_id)
        .order_by(RSVP.id.asc())
        .all()
    )

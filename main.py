import os
import logging
from dataclasses import asdict
from typing import Optional, List

from fastapi import FastAPI, Depends, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from datetime import datetime, date

import attendance
import occurrences
from auth import decode_token
from db import Base, engine, get_db
from errors import EngineError, Forbidden, NotFound
from models import User, ROLE_ATHLETE, STAFF_ROLES
from recurrence import align_start_date, parse_rule, parse_time_of_day
from reminders import LoggingNotifier, Notifier, process_reminders
from schemas import (
    CancelOccurrenceRequest,
    CustomOccurrenceRequest,
    EventCreateRequest,
    EventOut,
    EventUpdateRequest,
    EventWithOccurrencesOut,
    OccurrenceOut,
    RsvpEditRequest,
    RsvpOut,
    RsvpRequest,
)


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CRON_SECRET = os.getenv("CRON_SECRET", "")
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:5500,http://127.0.0.1:5500").split(",")
    if o.strip()
]

app = FastAPI(title="Cotrainer Sessions")

# ---------- CORS ----------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Startup ----------
@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    logger.info("DB ready")


@app.exception_handler(EngineError)
def engine_error_handler(request: Request, exc: EngineError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


_notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    return _notifier


# ---------- Caller ----------
def get_current_user(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing token")

    token = authorization.split(" ", 1)[1]
    user_id = decode_token(token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not user.gym_id:
        raise HTTPException(status_code=400, detail="User must belong to a gym")
    return user


def require_staff(user: User, action: str) -> None:
    if user.role not in STAFF_ROLES:
        raise Forbidden(f"Only owners and coaches can {action}")


def _event_out(event) -> EventOut:
    return EventOut.model_validate(event)


def _occurrences_out(items) -> List[OccurrenceOut]:
    return [OccurrenceOut.model_validate(o) for o in items]


# ---------- Health ----------
@app.get("/health")
def health():
    return {"ok": True}


# ---------- Events ----------
@app.post("/api/events")
def create_event(
    req: EventCreateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_staff(user, "create events")

    fields = req.model_dump()
    start = req.start_date or date.today()
    fields["start_date"] = align_start_date(parse_rule(req.recurrence_rule), start)

    event, created = occurrences.create_event(db, user.gym_id, fields)
    return {"ok": True, "event": _event_out(event), "created": created}


@app.get("/api/events", response_model=list[EventWithOccurrencesOut])
def list_events(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return [
        EventWithOccurrencesOut(event=_event_out(ev), occurrences=_occurrences_out(upcoming))
        for ev, upcoming in occurrences.list_events(db, user.gym_id)
    ]


@app.get("/api/events/{event_id}", response_model=EventWithOccurrencesOut)
def get_event(
    event_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    from_date: date | None = Query(default=None),
    to_date: date | None = Query(default=None),
):
    event = occurrences.get_event(db, user.gym_id, event_id)
    items = occurrences.list_occurrences(db, event.id, from_date, to_date)
    return EventWithOccurrencesOut(event=_event_out(event), occurrences=_occurrences_out(items))


@app.put("/api/events/{event_id}")
def update_event(
    event_id: int,
    req: EventUpdateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_staff(user, "edit events")
    event = occurrences.get_event(db, user.gym_id, event_id)

    changes = req.model_dump(exclude_unset=True)
    if "recurrence_rule" in changes and "start_date" not in changes:
        # a new BYDAY moves the series onto that weekday from today on
        new_rule = parse_rule(changes["recurrence_rule"])
        if new_rule.weekday and new_rule != parse_rule(event.recurrence_rule):
            start = max(event.start_date, date.today())
            changes["start_date"] = align_start_date(new_rule, start)

    result = occurrences.reconcile_on_edit(db, event, changes)
    return {"ok": True, "event": _event_out(event), **asdict(result)}


@app.delete("/api/events/{event_id}")
def delete_event(
    event_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_staff(user, "delete events")
    removed = occurrences.delete_event(db, user.gym_id, event_id)
    return {"ok": True, "deleted_occurrences": removed}


# ---------- Occurrences ----------
@app.post("/api/events/{event_id}/occurrences")
def add_occurrence(
    event_id: int,
    req: CustomOccurrenceRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_staff(user, "add occurrences")

    when = req.occurrence_date
    if req.start_time:
        when = datetime.combine(req.occurrence_date, parse_time_of_day(req.start_time))

    occ = occurrences.add_custom_occurrence(db, user.gym_id, event_id, when, req.note)
    return {"ok": True, "occurrence": OccurrenceOut.model_validate(occ)}


@app.delete("/api/events/{event_id}/occurrences/{occurrence_id}")
def remove_occurrence(
    event_id: int,
    occurrence_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_staff(user, "remove occurrences")

    occ = occurrences.get_occurrence(db, user.gym_id, occurrence_id)
    if occ.event_id != event_id:
        raise NotFound("Occurrence not found")

    occurrences.remove_custom_occurrence(db, user.gym_id, occurrence_id)
    return {"ok": True}


@app.post("/api/occurrences/{occurrence_id}/cancel")
def cancel_occurrence(
    occurrence_id: int,
    req: Optional[CancelOccurrenceRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    require_staff(user, "cancel events")
    notify = req.notify_users if req else True

    occ, changed = occurrences.cancel_occurrence(db, user.gym_id, occurrence_id)

    notified = 0
    if changed and notify:
        user_ids = occurrences.going_user_ids(db, occ.id)
        try:
            notifier.send_cancellation(occ, user_ids)
            notified = len(user_ids)
        except Exception:
            logger.warning("Cancellation notice for occurrence %s failed", occ.id, exc_info=True)

    return {
        "ok": True,
        "changed": changed,
        "notified": notified,
        "occurrence": OccurrenceOut.model_validate(occ),
    }


@app.post("/api/occurrences/{occurrence_id}/restore")
def restore_occurrence(
    occurrence_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_staff(user, "restore events")
    occ, changed = occurrences.restore_occurrence(db, user.gym_id, occurrence_id)
    return {"ok": True, "changed": changed, "occurrence": OccurrenceOut.model_validate(occ)}


# ---------- RSVP ----------
@app.get("/api/occurrences/{occurrence_id}/rsvps", response_model=list[RsvpOut])
def occurrence_rsvps(
    occurrence_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    occ = occurrences.get_occurrence(db, user.gym_id, occurrence_id)
    return attendance.list_rsvps(db, occ.id)


@app.post("/api/rsvp")
def rsvp(
    req: RsvpRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if user.role != ROLE_ATHLETE:
        raise Forbidden("Only athletes can RSVP")

    occurrences.get_occurrence(db, user.gym_id, req.occurrence_id)
    row = attendance.upsert_rsvp(db, user.id, req.occurrence_id, req.status)
    return {"ok": True, "rsvp": RsvpOut.model_validate(row)}


@app.post("/api/rsvp/edit")
def rsvp_edit(
    req: RsvpEditRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_staff(user, "edit RSVPs")
    occurrences.get_occurrence(db, user.gym_id, req.occurrence_id)

    target = db.query(User).filter(User.id == req.user_id).first()
    if not target or target.gym_id != user.gym_id:
        raise NotFound("User not found in your gym")

    row = attendance.upsert_rsvp(db, target.id, req.occurrence_id, req.status, updated_by=user.id)
    return {"ok": True, "rsvp": RsvpOut.model_validate(row)}


# ---------- Reminders (cron) ----------
@app.post("/api/reminders/process")
def reminders_process(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    if not CRON_SECRET or authorization != f"Bearer {CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")

    now = datetime.now()
    result = process_reminders(db, notifier, now)
    return {"ok": True, **asdict(result), "timestamp": now.isoformat()}

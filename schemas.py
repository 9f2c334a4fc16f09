# schemas.py
from datetime import date, datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator

from reminders import normalize_reminder_days


# ---------- Events ----------
class EventCreateRequest(BaseModel):
    # required fields are checked by the engine so they surface as 400s
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[str] = None        # "HH:MM"
    end_time: Optional[str] = None          # "HH:MM"
    start_date: Optional[date] = None       # first session, defaults to today
    recurrence_rule: Optional[str] = None   # "FREQ=WEEKLY;BYDAY=MO"
    recurrence_end_date: Optional[date] = None
    recurrence_count: Optional[int] = None
    reminder_days: List[float] = []

    @field_validator("reminder_days", mode="before")
    @classmethod
    def _reminder_days(cls, v):
        return normalize_reminder_days(v)


class EventUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    start_date: Optional[date] = None
    recurrence_rule: Optional[str] = None
    recurrence_end_date: Optional[date] = None
    recurrence_count: Optional[int] = None
    reminder_days: Optional[List[float]] = None

    @field_validator("reminder_days", mode="before")
    @classmethod
    def _reminder_days(cls, v):
        return normalize_reminder_days(v)


class OccurrenceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: int
    date: datetime
    status: str
    is_custom: bool
    note: Optional[str] = None


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    gym_id: int
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: str
    end_time: str
    start_date: date
    recurrence_rule: Optional[str] = None
    recurrence_end_date: Optional[date] = None
    recurrence_count: Optional[int] = None
    reminder_days: Optional[List[Union[int, float]]] = None


class EventWithOccurrencesOut(BaseModel):
    event: EventOut
    occurrences: List[OccurrenceOut]


# ---------- Occurrences ----------
class CustomOccurrenceRequest(BaseModel):
    occurrence_date: date
    start_time: Optional[str] = None   # defaults to the event's start time
    note: Optional[str] = None


class CancelOccurrenceRequest(BaseModel):
    notify_users: bool = True


# ---------- RSVP ----------
class RsvpRequest(BaseModel):
    occurrence_id: int
    status: str = "going"


class RsvpEditRequest(BaseModel):
    user_id: int
    occurrence_id: int
    status: str


class RsvpOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    occurrence_id: int
    status: str
    updated_by: Optional[int] = None

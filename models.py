# models.py
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from db import Base


OCCURRENCE_SCHEDULED = "scheduled"
OCCURRENCE_CANCELED = "canceled"

RSVP_GOING = "going"
RSVP_NOT_GOING = "not_going"

ROLE_OWNER = "owner"
ROLE_COACH = "coach"
ROLE_ATHLETE = "athlete"
STAFF_ROLES = {ROLE_OWNER, ROLE_COACH}


class Gym(Base):
    __tablename__ = "gyms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)

    users = relationship("User", back_populates="gym")
    events = relationship("Event", back_populates="gym")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String(200), nullable=True)
    gym_id = Column(Integer, ForeignKey("gyms.id"), index=True, nullable=True)
    role = Column(String(20), nullable=False, default=ROLE_ATHLETE)

    gym = relationship("Gym", back_populates="users")


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    gym_id = Column(Integer, ForeignKey("gyms.id"), index=True, nullable=False)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(200), nullable=True)

    # wall clock "HH:MM"
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    start_date = Column(Date, nullable=False)

    recurrence_rule = Column(String(100), nullable=True)
    recurrence_end_date = Column(Date, nullable=True)
    recurrence_count = Column(Integer, nullable=True)
    reminder_days = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    gym = relationship("Gym", back_populates="events")
    occurrences = relationship(
        "EventOccurrence", back_populates="event", order_by="EventOccurrence.date"
    )


class EventOccurrence(Base):
    __tablename__ = "event_occurrences"
    __table_args__ = (
        UniqueConstraint("event_id", "date", name="uq_event_occurrences_event_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), index=True, nullable=False)
    date = Column(DateTime, index=True, nullable=False)
    status = Column(String(20), nullable=False, default=OCCURRENCE_SCHEDULED)
    is_custom = Column(Boolean, nullable=False, default=False)
    note = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    event = relationship("Event", back_populates="occurrences")
    rsvps = relationship("RSVP", back_populates="occurrence")


class RSVP(Base):
    __tablename__ = "rsvps"
    __table_args__ = (
        UniqueConstraint("user_id", "occurrence_id", name="uq_rsvps_user_occurrence"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    occurrence_id = Column(Integer, ForeignKey("event_occurrences.id"), index=True, nullable=False)
    status = Column(String(20), nullable=False, default=RSVP_GOING)
    # set when a coach answers on the athlete's behalf
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    occurrence = relationship("EventOccurrence", back_populates="rsvps")
    user = relationship("User", foreign_keys=[user_id])


class ReminderLog(Base):
    __tablename__ = "reminder_logs"
    __table_args__ = (
        UniqueConstraint(
            "occurrence_id", "user_id", "reminder_type", name="uq_reminder_logs_dispatch"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    occurrence_id = Column(Integer, ForeignKey("event_occurrences.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    reminder_type = Column(String(50), nullable=False)
    sent_at = Column(DateTime, nullable=False, default=datetime.now)

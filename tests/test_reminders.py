"""
Tests for reminder lead times, due-reminder selection and dispatch.
"""

from datetime import date, datetime, timedelta

import pytest

import occurrences
from attendance import upsert_rsvp
from models import EventOccurrence, ReminderLog
from reminders import (
    due_reminders,
    lead_time,
    normalize_reminder_days,
    process_reminders,
    record_reminder_sent,
    reminder_type,
)


NOW = datetime(2026, 3, 1, 12, 0)
SESSION = datetime(2026, 3, 10, 7, 0)


class RecordingNotifier:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []
        self.canceled = []

    def send_reminder(self, reminder):
        if reminder.user_id in self.fail_for:
            raise RuntimeError("mail server down")
        self.sent.append((reminder.occurrence_id, reminder.user_id, reminder.reminder_type))

    def send_cancellation(self, occurrence, user_ids):
        self.canceled.append((occurrence.id, list(user_ids)))


@pytest.fixture
def session_event(db, gym, event_fields):
    fields = {
        **event_fields,
        "recurrence_rule": None,
        "start_date": SESSION.date(),
        "reminder_days": [1, 0.02],
    }
    event, _ = occurrences.create_event(db, gym.id, fields, now=NOW)
    return event


@pytest.fixture
def session(db, session_event):
    return db.query(EventOccurrence).filter(EventOccurrence.event_id == session_event.id).one()


class TestNormalizeReminderDays:

    def test_json_array_string(self):
        assert normalize_reminder_days("[7, 1, 0.02]") == [7, 1, 0.02]

    def test_native_list_drops_unparseable(self):
        assert normalize_reminder_days([1, "3", "x", None, -1, float("nan")]) == [3, 1]

    def test_bracketed_literal_fallback(self):
        assert normalize_reminder_days("[7, 1") == [7, 1]
        assert normalize_reminder_days("{7,1}") == [7, 1]
        assert normalize_reminder_days("['7', '0.02']") == [7, 0.02]

    def test_duplicates_collapse(self):
        assert normalize_reminder_days([1, 1.0, "1"]) == [1]

    @pytest.mark.parametrize("raw", [None, "", "[]", "nonsense", []])
    def test_empty(self, raw):
        assert normalize_reminder_days(raw) == []

    def test_single_number(self):
        assert normalize_reminder_days(3) == [3]
        assert normalize_reminder_days("3") == [3]

    def test_lead_times_beyond_a_year_are_dropped(self):
        assert normalize_reminder_days([1, 366, 367, 800000, "1e9"]) == [366, 1]


class TestLeadTime:

    def test_whole_days(self):
        assert lead_time(7) == timedelta(days=7)
        assert reminder_type(7) == "7_day"
        assert reminder_type(1.0) == "1_day"

    def test_thirty_minute_preset(self):
        assert lead_time(0.02) == timedelta(minutes=30)
        assert reminder_type(0.02) == "30_min"

    def test_other_sub_day_offsets(self):
        assert reminder_type(0.5) == "720_min"
        assert lead_time(0.0001) == timedelta(minutes=5)


class TestDueReminders:

    def test_nothing_due_before_trigger(self, db, athlete, session):
        assert due_reminders(db, datetime(2026, 3, 9, 6, 59)) == []

    def test_day_reminder_goes_to_athletes(self, db, coach, athlete, second_athlete, session):
        due = due_reminders(db, datetime(2026, 3, 9, 7, 0))

        assert {(d.occurrence_id, d.user_id, d.reminder_type) for d in due} == {
            (session.id, athlete.id, "1_day"),
            (session.id, second_athlete.id, "1_day"),
        }
        assert all(d.trigger_at == datetime(2026, 3, 9, 7, 0) for d in due)

    def test_declined_athletes_are_skipped(self, db, athlete, second_athlete, session):
        upsert_rsvp(db, second_athlete.id, session.id, "not_going", now=NOW)

        due = due_reminders(db, datetime(2026, 3, 9, 8, 0))
        assert [d.user_id for d in due] == [athlete.id]

    def test_both_lead_times_due_close_to_start(self, db, athlete, session):
        due = due_reminders(db, datetime(2026, 3, 10, 6, 40))
        assert sorted(d.reminder_type for d in due) == ["1_day", "30_min"]

    def test_logged_reminders_are_never_repeated(self, db, athlete, session):
        first = due_reminders(db, datetime(2026, 3, 9, 8, 0))
        assert len(first) == 1
        assert record_reminder_sent(db, first[0])
        db.commit()

        later = due_reminders(db, datetime(2026, 3, 10, 6, 45))
        assert [(d.user_id, d.reminder_type) for d in later] == [(athlete.id, "30_min")]

    def test_record_is_idempotent(self, db, athlete, session):
        due = due_reminders(db, datetime(2026, 3, 9, 8, 0))[0]

        assert record_reminder_sent(db, due)
        assert not record_reminder_sent(db, due)
        db.commit()
        assert db.query(ReminderLog).count() == 1

    def test_canceled_and_past_sessions_are_ignored(self, db, gym, athlete, session):
        assert due_reminders(db, datetime(2026, 3, 10, 7, 0)) == []

        occurrences.cancel_occurrence(db, gym.id, session.id)
        assert due_reminders(db, datetime(2026, 3, 9, 8, 0)) == []

    def test_events_without_lead_times(self, db, gym, athlete, event_fields):
        fields = {**event_fields, "recurrence_rule": None, "start_date": date(2026, 3, 4), "reminder_days": []}
        occurrences.create_event(db, gym.id, fields, now=NOW)

        assert due_reminders(db, datetime(2026, 3, 4, 6, 59)) == []

    def test_oversized_stored_lead_time_does_not_block_other_events(
        self, db, gym, athlete, event_fields, session
    ):
        fields = {
            **event_fields,
            "title": "Open Gym",
            "recurrence_rule": None,
            "start_date": date(2026, 3, 11),
        }
        broken, _ = occurrences.create_event(db, gym.id, fields, now=NOW)
        # written before lead times were bounded
        broken.reminder_days = [800000]
        db.commit()

        due = due_reminders(db, datetime(2026, 3, 9, 8, 0))

        assert [(d.occurrence_id, d.reminder_type) for d in due] == [(session.id, "1_day")]

    def test_longest_lead_time_is_honoured(self, db, gym, athlete, event_fields):
        fields = {
            **event_fields,
            "recurrence_rule": None,
            "start_date": date(2027, 3, 2),
            "reminder_days": [366],
        }
        occurrences.create_event(db, gym.id, fields, now=NOW)

        due = due_reminders(db, datetime(2026, 3, 1, 8, 0))

        assert [d.reminder_type for d in due] == ["366_day"]
        assert due[0].trigger_at == datetime(2026, 3, 1, 7, 0)

    def test_other_gyms_athletes_are_not_reminded(self, db, other_gym, athlete, session):
        from models import User

        db.add(User(email="x@rivals.com", gym_id=other_gym.id, role="athlete"))
        db.commit()

        due = due_reminders(db, datetime(2026, 3, 9, 8, 0))
        assert [d.user_id for d in due] == [athlete.id]


class TestProcessReminders:

    def test_failed_delivery_is_retried_success_is_not(self, db, athlete, second_athlete, session):
        notifier = RecordingNotifier(fail_for=[second_athlete.id])

        result = process_reminders(db, notifier, datetime(2026, 3, 9, 8, 0))

        assert (result.processed, result.sent, result.failed) == (2, 1, 1)
        assert notifier.sent == [(session.id, athlete.id, "1_day")]
        assert len(result.errors) == 1

        notifier.fail_for.clear()
        result = process_reminders(db, notifier, datetime(2026, 3, 9, 8, 5))

        assert (result.processed, result.sent, result.failed) == (1, 1, 0)
        assert notifier.sent[-1] == (session.id, second_athlete.id, "1_day")
        assert db.query(ReminderLog).count() == 2

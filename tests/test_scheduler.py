"""
Tests for due-time computation.

2024-01-08 is a Monday (weekday 1 with Sunday=0).
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from cardbridge.scheduler import compute_due_time, js_weekday
from cardbridge.variants import Schedule

UTC = timezone.utc


def at(day, hour, minute=0):
    return datetime(2024, 1, day, hour, minute, tzinfo=UTC)


class TestImmediate:

    def test_no_schedule_is_now(self):
        assert compute_due_time(at(8, 8)) == at(8, 8)
        assert compute_due_time(at(8, 8), {}) == at(8, 8)

    def test_naive_now_treated_as_utc(self):
        assert compute_due_time(datetime(2024, 1, 8, 8, 0)) == at(8, 8)


class TestAtAndDelay:

    def test_delay(self):
        assert compute_due_time(at(8, 8), {"delay": "90m"}) == at(8, 9, 30)

    def test_future_at(self):
        target = at(10, 12)
        ms = int(target.timestamp() * 1000)
        assert compute_due_time(at(8, 8), {"at": ms}) == target

    def test_past_at_is_ignored(self):
        ms = int(at(1, 0).timestamp() * 1000)
        assert compute_due_time(at(8, 8), {"at": ms}) == at(8, 8)

    def test_delay_applies_after_at(self):
        ms = int(at(10, 12).timestamp() * 1000)
        assert compute_due_time(at(8, 8), {"at": ms, "delay": "1h"}) == at(10, 13)


class TestTimeOfDay:

    def test_before_after_time_same_day(self):
        assert compute_due_time(at(8, 8), {"time": {"after": "09:00"}}, tz="UTC") == at(8, 9)

    def test_past_after_time_next_day(self):
        assert compute_due_time(at(8, 10), {"time": {"after": "09:00"}}, tz="UTC") == at(9, 9)

    def test_day_of_week_advances_to_allowed_day(self):
        # Tuesday 10:00 -> Wednesday 09:00
        schedule = {"time": {"after": "09:00"}, "day_of_week": [1, 3, 5]}
        due = compute_due_time(at(9, 10), schedule, tz="UTC")
        assert due == at(10, 9)
        assert js_weekday(due) == 3

    def test_day_of_week_skips_weekend(self):
        # Friday 10:00 -> Monday 09:00
        schedule = {"time": {"after": "09:00"}, "day_of_week": [1, 3, 5]}
        assert compute_due_time(at(12, 10), schedule, tz="UTC") == at(15, 9)

    def test_day_of_week_alone_runs_immediately(self):
        # Tuesday, only Wednesday allowed: no time window, so no wait
        assert compute_due_time(at(9, 8), {"day_of_week": [3]}, tz="UTC") == at(9, 8)

    def test_day_of_week_applies_after_before_push(self):
        # Tuesday 13:00 past 12:00 -> Wednesday is skipped -> Thursday 00:00
        schedule = {"time": {"before": "12:00"}, "day_of_week": [4]}
        assert compute_due_time(at(9, 13), schedule, tz="UTC") == at(11, 0)

    def test_day_of_week_ignored_when_before_is_met(self):
        schedule = {"time": {"before": "12:00"}, "day_of_week": [4]}
        assert compute_due_time(at(9, 8), schedule, tz="UTC") == at(9, 8)

    def test_before_pushes_to_next_day(self):
        schedule = {"time": {"after": "09:00", "before": "17:00"}}
        assert compute_due_time(at(8, 8), schedule, tz="UTC") == at(8, 9)
        assert compute_due_time(at(8, 18), schedule, tz="UTC") == at(9, 9)

    def test_before_alone(self):
        schedule = {"time": {"before": "12:00"}}
        assert compute_due_time(at(8, 8), schedule, tz="UTC") == at(8, 8)
        assert compute_due_time(at(8, 13), schedule, tz="UTC") == at(9, 0)

    def test_time_evaluated_in_configured_zone(self):
        # 09:00 in Rome is 08:00 UTC in January
        assert compute_due_time(at(8, 7), {"time": {"after": "09:00"}}, tz="Europe/Rome") == at(8, 8)


class TestDateOffset:

    def test_offset_before_event(self):
        event = at(20, 12)
        schedule = {"date": {"days_before_event": 2}}
        due = compute_due_time(at(8, 8), schedule, {"event_at": event.isoformat()})
        assert due == event - timedelta(days=2)

    def test_epoch_ms_event_field(self):
        event = at(20, 12)
        schedule = {"date": {"hours_before_event": 3, "event_field": "starts"}}
        due = compute_due_time(at(8, 8), schedule, {"starts": int(event.timestamp() * 1000)})
        assert due == at(20, 9)

    def test_past_offset_does_not_move_earlier(self):
        schedule = {"date": {"days_before_event": 30}}
        assert compute_due_time(at(8, 8), schedule, {"event_at": at(20, 12)}) == at(8, 8)

    def test_missing_event_ignored(self):
        assert compute_due_time(at(8, 8), {"date": {"days_before_event": 1}}, {}) == at(8, 8)


class TestScheduleValidation:

    def test_bad_clock_string(self):
        with pytest.raises(ValidationError):
            Schedule.model_validate({"time": {"after": "9am"}})

    def test_weekday_out_of_range(self):
        with pytest.raises(ValidationError):
            Schedule.model_validate({"day_of_week": [7]})

    def test_before_must_follow_after(self):
        with pytest.raises(ValidationError):
            Schedule.model_validate({"time": {"after": "10:00", "before": "09:00"}})

    def test_bad_delay(self):
        with pytest.raises(ValidationError):
            Schedule.model_validate({"delay": "soon"})

    def test_days_normalized(self):
        assert Schedule.model_validate({"day_of_week": [5, 1, 5]}).day_of_week == [1, 5]

    def test_at_out_of_range(self):
        with pytest.raises(ValidationError):
            Schedule.model_validate({"at": 10**18})

    def test_delay_out_of_range(self):
        with pytest.raises(ValidationError):
            Schedule.model_validate({"delay": "99999999999d"})


class TestUnusableEventTimes:

    @pytest.mark.parametrize("event_at", [10**18, -10**18, float("nan"), "not a date", True])
    def test_unusable_event_ignores_date_rule(self, event_at):
        schedule = {"date": {"days_before_event": 1}}
        assert compute_due_time(at(8, 8), schedule, {"event_at": event_at}) == at(8, 8)

    def test_offset_past_datetime_range_ignored(self):
        schedule = {"date": {"days_before_event": 10**12}}
        assert compute_due_time(at(8, 8), schedule, {"event_at": at(20, 12)}) == at(8, 8)

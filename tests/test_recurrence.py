"""
Tests — Recurrence calculator.

Covers:
    1. First occurrence (start_date + due_time)
    2. Daily / weekly / monthly / quarterly / yearly / custom steps
    3. Month-end clamping
    4. Missed-cycle skipping with a reference time
    5. Non-recurring rules
    6. Rule validation and unrepresentable dates
"""

from datetime import date, datetime, time
from types import SimpleNamespace

import pytest

from compliance.core.exceptions import InvalidRuleError, ScheduleComputationError
from compliance.services.recurrence import (
    RecurrenceRule,
    compute_next_due,
    rule_from_checklist,
    validate_rule,
)


def _rule(frequency_type="weekly", *, start=date(2024, 1, 1), interval=1,
          unit=None, value=None, due_time=time(10, 0), recurring=True, last=None):
    return RecurrenceRule(
        frequency_type=frequency_type,
        start_date=start,
        frequency_interval=interval,
        custom_frequency_unit=unit,
        custom_frequency_value=value,
        due_time=due_time,
        is_recurring=recurring,
        last_occurrence=last,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  FIRST OCCURRENCE & STEPS
# ═══════════════════════════════════════════════════════════════════════════

class TestFirstOccurrence:
    def test_first_is_start_date_plus_due_time(self):
        assert compute_next_due(_rule()) == datetime(2024, 1, 1, 10, 0)

    def test_first_without_due_time_is_midnight(self):
        assert compute_next_due(_rule(due_time=None)) == datetime(2024, 1, 1, 0, 0)

    def test_first_returned_even_if_in_the_past(self):
        rule = _rule(start=date(2020, 5, 4))
        assert compute_next_due(rule, reference_time=datetime(2024, 1, 1)) == datetime(2020, 5, 4, 10, 0)


class TestSteps:
    def test_weekly_second_cycle(self):
        rule = _rule("weekly")
        first = compute_next_due(rule)
        assert compute_next_due(rule.after(first)) == datetime(2024, 1, 8, 10, 0)

    def test_daily_interval(self):
        rule = _rule("daily", interval=3, last=datetime(2024, 1, 1, 10, 0))
        assert compute_next_due(rule) == datetime(2024, 1, 4, 10, 0)

    def test_weekly_interval_two(self):
        rule = _rule("weekly", interval=2, last=datetime(2024, 1, 1, 10, 0))
        assert compute_next_due(rule) == datetime(2024, 1, 15, 10, 0)

    def test_due_time_is_reapplied(self):
        rule = _rule("daily", last=datetime(2024, 1, 1, 10, 37))
        assert compute_next_due(rule) == datetime(2024, 1, 2, 10, 0)

    def test_custom_hours_advance_time_of_day(self):
        rule = _rule("custom", unit="hours", value=6, last=datetime(2024, 1, 1, 10, 0))
        assert compute_next_due(rule) == datetime(2024, 1, 1, 16, 0)

    def test_custom_days(self):
        rule = _rule("custom", unit="days", value=10, last=datetime(2024, 1, 1, 10, 0))
        assert compute_next_due(rule) == datetime(2024, 1, 11, 10, 0)

    def test_custom_years(self):
        rule = _rule("custom", unit="years", value=2, last=datetime(2024, 1, 1, 10, 0))
        assert compute_next_due(rule) == datetime(2026, 1, 1, 10, 0)

    @pytest.mark.parametrize("frequency_type,unit,value", [
        ("daily", None, None),
        ("weekly", None, None),
        ("monthly", None, None),
        ("quarterly", None, None),
        ("yearly", None, None),
        ("custom", "hours", 1),
        ("custom", "days", 2),
        ("custom", "weeks", 1),
        ("custom", "months", 5),
        ("custom", "years", 1),
    ])
    def test_next_is_strictly_after_last(self, frequency_type, unit, value):
        last = datetime(2024, 1, 31, 10, 0)
        rule = _rule(frequency_type, start=date(2024, 1, 31), unit=unit, value=value, last=last)
        assert compute_next_due(rule) > last


# ═══════════════════════════════════════════════════════════════════════════
#  MONTH-END CLAMPING
# ═══════════════════════════════════════════════════════════════════════════

class TestMonthClamping:
    def test_jan_31_to_feb_29_in_leap_year(self):
        rule = _rule("monthly", start=date(2024, 1, 31), due_time=time(9, 0),
                     last=datetime(2024, 1, 31, 9, 0))
        assert compute_next_due(rule) == datetime(2024, 2, 29, 9, 0)

    def test_jan_31_to_feb_28_in_common_year(self):
        rule = _rule("monthly", start=date(2023, 1, 31), due_time=time(9, 0),
                     last=datetime(2023, 1, 31, 9, 0))
        assert compute_next_due(rule) == datetime(2023, 2, 28, 9, 0)

    def test_quarterly_clamps(self):
        rule = _rule("quarterly", start=date(2024, 11, 30), last=datetime(2024, 11, 30, 10, 0))
        assert compute_next_due(rule) == datetime(2025, 2, 28, 10, 0)

    def test_yearly_from_leap_day(self):
        rule = _rule("yearly", start=date(2024, 2, 29), last=datetime(2024, 2, 29, 10, 0))
        assert compute_next_due(rule) == datetime(2025, 2, 28, 10, 0)

    def test_custom_months_clamps(self):
        rule = _rule("custom", start=date(2024, 12, 31), unit="months", value=2,
                     last=datetime(2024, 12, 31, 10, 0))
        assert compute_next_due(rule) == datetime(2025, 2, 28, 10, 0)


# ═══════════════════════════════════════════════════════════════════════════
#  REFERENCE TIME
# ═══════════════════════════════════════════════════════════════════════════

class TestReferenceTime:
    def test_missed_daily_cycles_are_skipped(self):
        rule = _rule("daily", last=datetime(2024, 1, 1, 10, 0))
        nxt = compute_next_due(rule, reference_time=datetime(2024, 1, 10, 12, 0))
        assert nxt == datetime(2024, 1, 11, 10, 0)

    def test_missed_monthly_cycles_are_skipped(self):
        rule = _rule("monthly", start=date(2024, 1, 15), last=datetime(2024, 1, 15, 10, 0))
        nxt = compute_next_due(rule, reference_time=datetime(2024, 4, 20, 8, 0))
        assert nxt == datetime(2024, 5, 15, 10, 0)

    def test_result_equal_to_reference_is_skipped(self):
        rule = _rule("daily", last=datetime(2024, 1, 1, 10, 0))
        nxt = compute_next_due(rule, reference_time=datetime(2024, 1, 2, 10, 0))
        assert nxt == datetime(2024, 1, 3, 10, 0)

    def test_reference_in_the_past_changes_nothing(self):
        rule = _rule("weekly", last=datetime(2024, 1, 1, 10, 0))
        assert compute_next_due(rule, reference_time=datetime(2023, 6, 1)) == datetime(2024, 1, 8, 10, 0)

    def test_never_earlier_than_first_occurrence(self):
        rule = _rule("daily", start=date(2024, 6, 1), last=datetime(2024, 1, 1, 10, 0))
        assert compute_next_due(rule) == datetime(2024, 6, 1, 10, 0)


# ═══════════════════════════════════════════════════════════════════════════
#  NON-RECURRING, VALIDATION, ERRORS
# ═══════════════════════════════════════════════════════════════════════════

class TestNonRecurring:
    def test_single_occurrence_before_firing(self):
        assert compute_next_due(_rule(recurring=False)) == datetime(2024, 1, 1, 10, 0)

    def test_none_after_firing(self):
        rule = _rule(recurring=False, last=datetime(2024, 1, 1, 10, 0))
        assert compute_next_due(rule) is None


class TestValidation:
    def test_interval_below_one(self):
        with pytest.raises(InvalidRuleError) as exc:
            compute_next_due(_rule(interval=0))
        assert "frequency_interval" in exc.value.details

    def test_unknown_frequency(self):
        with pytest.raises(InvalidRuleError) as exc:
            validate_rule(_rule("fortnightly"))
        assert "frequency_type" in exc.value.details

    def test_custom_requires_unit(self):
        with pytest.raises(InvalidRuleError) as exc:
            validate_rule(_rule("custom", value=3))
        assert "custom_frequency_unit" in exc.value.details

    def test_custom_requires_positive_value(self):
        with pytest.raises(InvalidRuleError) as exc:
            validate_rule(_rule("custom", unit="days", value=0))
        assert "custom_frequency_value" in exc.value.details

    def test_unrepresentable_date(self):
        rule = _rule("yearly", start=date(9999, 1, 1), last=datetime(9999, 6, 1, 10, 0))
        with pytest.raises(ScheduleComputationError):
            compute_next_due(rule)


class TestRuleFromChecklist:
    def test_reads_checklist_fields(self):
        checklist = SimpleNamespace(
            frequency_type="monthly", start_date=date(2024, 1, 31),
            frequency_interval=None, custom_frequency_unit=None,
            custom_frequency_value=None, due_time=time(8, 30), is_recurring=1,
        )
        rule = rule_from_checklist(checklist, last_occurrence=datetime(2024, 1, 31, 8, 30))
        assert rule.frequency_interval == 1
        assert rule.is_recurring is True
        assert compute_next_due(rule) == datetime(2024, 2, 29, 8, 30)

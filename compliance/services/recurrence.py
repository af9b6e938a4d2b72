"""
Recurrence Calculator — next due date of a checklist schedule.

Pure functions: no database access, no clock. Given a checklist's frequency
rule and the last occurrence, returns the next due timestamp.

Rules:
    daily      → last + interval days
    weekly     → last + interval weeks
    monthly    → last + interval calendar months
    quarterly  → last + 3 × interval calendar months
    yearly     → last + 12 × interval calendar months
    custom     → last + custom_value × custom_unit (hours/days/weeks/months/years)

Month arithmetic goes through ``dateutil.relativedelta`` so the day-of-month
clamps to the end of the target month (Jan 31 + 1 month = Feb 28/29).
The configured ``due_time`` is re-applied to every computed occurrence,
except for hour-based custom rules where the time of day is what advances.

Usage:
    from compliance.services.recurrence import compute_next_due, rule_from_checklist

    rule = rule_from_checklist(checklist, last_occurrence=checklist.next_due_at)
    next_due = compute_next_due(rule, reference_time=now)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta

from dateutil.relativedelta import relativedelta

from compliance.core.exceptions import InvalidRuleError, ScheduleComputationError
from compliance.models.checklist import CUSTOM_FREQUENCY_UNITS, FREQUENCY_TYPES

MAX_ITERATIONS = 10_000

_MONTHS_PER_STEP = {"monthly": 1, "quarterly": 3, "yearly": 12}


@dataclass(frozen=True)
class RecurrenceRule:
    frequency_type: str
    start_date: date
    frequency_interval: int = 1
    custom_frequency_unit: str | None = None
    custom_frequency_value: int | None = None
    due_time: time | None = None
    is_recurring: bool = True
    last_occurrence: datetime | None = None

    @property
    def time_of_day(self) -> time:
        return self.due_time or time(0, 0)

    @property
    def first_occurrence(self) -> datetime:
        return datetime.combine(self.start_date, self.time_of_day)

    @property
    def is_hourly(self) -> bool:
        return self.frequency_type == "custom" and self.custom_frequency_unit == "hours"

    def after(self, occurrence: datetime | None) -> "RecurrenceRule":
        """Copy of this rule with ``occurrence`` as the last one fired."""
        return replace(self, last_occurrence=occurrence)


def rule_from_checklist(checklist, last_occurrence: datetime | None = None) -> RecurrenceRule:
    """Build a rule from a Checklist row (or anything with the same fields)."""
    return RecurrenceRule(
        frequency_type=checklist.frequency_type,
        start_date=checklist.start_date,
        frequency_interval=checklist.frequency_interval if checklist.frequency_interval is not None else 1,
        custom_frequency_unit=checklist.custom_frequency_unit,
        custom_frequency_value=checklist.custom_frequency_value,
        due_time=checklist.due_time,
        is_recurring=bool(checklist.is_recurring),
        last_occurrence=last_occurrence,
    )


def validate_rule(rule: RecurrenceRule) -> None:
    """Raise ``InvalidRuleError`` when the rule cannot produce a schedule."""
    errors = {}
    if rule.frequency_type not in FREQUENCY_TYPES:
        errors["frequency_type"] = f"Must be one of: {', '.join(FREQUENCY_TYPES)}"
    if not isinstance(rule.frequency_interval, int) or rule.frequency_interval < 1:
        errors["frequency_interval"] = "Must be an integer >= 1"
    if rule.start_date is None:
        errors["start_date"] = "Start date is required"
    if rule.frequency_type == "custom":
        if rule.custom_frequency_unit not in CUSTOM_FREQUENCY_UNITS:
            errors["custom_frequency_unit"] = (
                f"Required for custom frequency; one of: {', '.join(CUSTOM_FREQUENCY_UNITS)}"
            )
        value = rule.custom_frequency_value
        if not isinstance(value, int) or value < 1:
            errors["custom_frequency_value"] = "Required for custom frequency; must be >= 1"
    if errors:
        raise InvalidRuleError("Invalid recurrence rule", details=errors)


def step_delta(rule: RecurrenceRule) -> relativedelta:
    """One cycle of the rule as a relativedelta."""
    freq = rule.frequency_type
    interval = rule.frequency_interval
    if freq == "daily":
        return relativedelta(days=interval)
    if freq == "weekly":
        return relativedelta(weeks=interval)
    if freq in _MONTHS_PER_STEP:
        return relativedelta(months=interval * _MONTHS_PER_STEP[freq])

    value = rule.custom_frequency_value
    return {
        "hours": relativedelta(hours=value),
        "days": relativedelta(days=value),
        "weeks": relativedelta(weeks=value),
        "months": relativedelta(months=value),
        "years": relativedelta(years=value),
    }[rule.custom_frequency_unit]


def _fixed_length(delta: relativedelta) -> timedelta | None:
    """Return a timedelta when the step has no calendar component."""
    if delta.months or delta.years:
        return None
    return timedelta(days=delta.days, hours=delta.hours)


def _advance(occurrence: datetime, rule: RecurrenceRule, steps: int = 1) -> datetime:
    delta = step_delta(rule)
    try:
        nxt = occurrence + delta * steps
        if not rule.is_hourly:
            nxt = datetime.combine(nxt.date(), rule.time_of_day)
    except (OverflowError, ValueError) as exc:
        raise ScheduleComputationError(
            f"Cannot advance {occurrence.isoformat()} by {steps} x {delta}: {exc}"
        ) from exc
    return nxt


def compute_next_due(rule: RecurrenceRule, reference_time: datetime | None = None) -> datetime | None:
    """Return the next due timestamp of ``rule``.

    - No previous occurrence → the first one (``start_date`` + ``due_time``),
      even if it is already in the past; the caller decides what to do.
    - Non-recurring rule with a previous occurrence → ``None``.
    - Otherwise the occurrence one cycle after ``rule.last_occurrence``. When
      ``reference_time`` is given, missed cycles are skipped until the result
      is strictly after it.

    The result is never earlier than the first occurrence.

    Raises:
        InvalidRuleError: the rule is not schedulable.
        ScheduleComputationError: date arithmetic left the representable range.
    """
    validate_rule(rule)
    first = rule.first_occurrence

    if rule.last_occurrence is None:
        return first
    if not rule.is_recurring:
        return None

    candidate = _advance(rule.last_occurrence, rule)

    if reference_time is not None and candidate <= reference_time:
        fixed = _fixed_length(step_delta(rule))
        if fixed is not None:
            # Fast-forward fixed-length steps instead of looping over years
            behind = (reference_time - candidate) / fixed
            candidate = _advance(candidate, rule, steps=max(1, math.floor(behind)))

        iterations = 0
        while candidate <= reference_time:
            iterations += 1
            if iterations > MAX_ITERATIONS:
                raise ScheduleComputationError(
                    f"No occurrence after {reference_time.isoformat()} within {MAX_ITERATIONS} cycles"
                )
            candidate = _advance(candidate, rule)

    if candidate < first:
        return first
    return candidate


"""Recurring transaction templates and their scheduler."""

from family_ledger.recurring.scheduler import (
    RecurringFrequency,
    RecurringScheduler,
    RecurringTemplate,
    ScheduleResult,
    mark_executed,
    materialize,
    occurrence_id,
    should_execute_on,
)

__all__ = [
    "RecurringFrequency",
    "RecurringScheduler",
    "RecurringTemplate",
    "ScheduleResult",
    "mark_executed",
    "materialize",
    "occurrence_id",
    "should_execute_on",
]

"""
Recurring Transaction Scheduler

Turns recurring templates into ledger transactions.

DESIGN DECISION: Occurrences get deterministic ids, uuid5(template id,
occurrence date), and timestamps pinned to the occurrence's midnight UTC.
Two offline devices that both materialize the same occurrence produce
byte-identical records, so the next sync sees an identical add on both
sides instead of a duplicate.

Templates with auto_add disabled are not written. Their due occurrences
are returned as pending so the UI can ask the user first; the template
only advances once mark_executed is called for the confirmed day.
"""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4, uuid5

import structlog
from pydantic import BaseModel, Field, field_validator

from family_ledger.config import AppSettings, get_settings
from family_ledger.models.ledger import (
    Transaction,
    TransactionSource,
    TransactionType,
    utc_now,
)


logger = structlog.get_logger(__name__)

WEEKDAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


class RecurringFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class RecurringTemplate(BaseModel):
    """
    A recurring transaction template.

    weekdays uses 0 = Sunday through 6 = Saturday.
    """

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=utc_now)

    # What to record
    name: str = ""
    amount: Decimal = Field(..., gt=0)
    type: TransactionType = TransactionType.EXPENSE
    category_id: Optional[UUID] = None
    payer_id: Optional[UUID] = None
    participant_ids: list[UUID] = Field(default_factory=list)
    merchant: str = ""
    currency: str = "CNY"

    # Schedule
    frequency: RecurringFrequency = RecurringFrequency.DAILY
    interval: int = Field(default=1, ge=1, description="Every N days/weeks/months/years")
    weekdays: list[int] = Field(default_factory=list, description="Weekly only")
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    month_of_year: Optional[int] = Field(default=None, ge=1, le=12)

    # Limits and state
    end_date: Optional[date] = None
    occurrence_count: Optional[int] = Field(default=None, ge=1)
    executed_count: int = Field(default=0, ge=0)
    last_executed_date: Optional[date] = None
    enabled: bool = True
    auto_add: bool = False

    @field_validator('weekdays')
    @classmethod
    def validate_weekdays(cls, v: list[int]) -> list[int]:
        for day in v:
            if not 0 <= day <= 6:
                raise ValueError(f"weekday must be 0-6 (0 = Sunday), got {day}")
        return sorted(set(v))

    @property
    def description(self) -> str:
        """Human-readable rule, e.g. 'Every 2 weeks (Mon, Wed)'."""
        unit = {
            RecurringFrequency.DAILY: "day",
            RecurringFrequency.WEEKLY: "week",
            RecurringFrequency.MONTHLY: "month",
            RecurringFrequency.YEARLY: "year",
        }[self.frequency]
        text = f"Every {unit}" if self.interval == 1 else f"Every {self.interval} {unit}s"

        if self.frequency == RecurringFrequency.WEEKLY and self.weekdays:
            text += " (" + ", ".join(WEEKDAY_NAMES[d] for d in self.weekdays) + ")"
        elif self.frequency == RecurringFrequency.MONTHLY and self.day_of_month:
            text += f" (day {self.day_of_month})"
        elif (
            self.frequency == RecurringFrequency.YEARLY
            and self.month_of_year
            and self.day_of_month
        ):
            text += f" ({self.month_of_year}/{self.day_of_month})"
        return text


def _weekday_index(day: date) -> int:
    """0 = Sunday."""
    return day.isoweekday() % 7


def _months_between(start: date, end: date) -> int:
    months = (end.year - start.year) * 12 + end.month - start.month
    if end.day < start.day:
        months -= 1
    return months


def _years_between(start: date, end: date) -> int:
    years = end.year - start.year
    if (end.month, end.day) < (start.month, start.day):
        years -= 1
    return years


def should_execute_on(template: RecurringTemplate, day: date) -> bool:
    """Whether the template has an occurrence due on the given day."""
    if not template.enabled:
        return False

    if template.occurrence_count is not None and template.executed_count >= template.occurrence_count:
        return False

    if template.end_date is not None and day > template.end_date:
        return False

    last = template.last_executed_date
    if last is not None and last >= day:
        return False

    if template.frequency == RecurringFrequency.DAILY:
        if last is not None:
            return (day - last).days >= template.interval
        return True

    if template.frequency == RecurringFrequency.WEEKLY:
        if _weekday_index(day) not in template.weekdays:
            return False
        if template.interval > 1 and last is not None:
            return (day - last).days // 7 >= template.interval
        return True

    if template.frequency == RecurringFrequency.MONTHLY:
        if template.day_of_month is None or day.day != template.day_of_month:
            return False
        if template.interval > 1 and last is not None:
            return _months_between(last, day) >= template.interval
        return True

    # Yearly
    if template.month_of_year is None or template.day_of_month is None:
        return False
    if (day.month, day.day) != (template.month_of_year, template.day_of_month):
        return False
    if template.interval > 1 and last is not None:
        return _years_between(last, day) >= template.interval
    return True


def occurrence_id(template: RecurringTemplate, day: date) -> UUID:
    return uuid5(template.id, day.isoformat())


def materialize(template: RecurringTemplate, day: date) -> Transaction:
    """Build the transaction for one occurrence."""
    stamp = datetime.combine(day, time.min, tzinfo=timezone.utc)
    participants = list(template.participant_ids)
    if template.payer_id is not None and participants and template.payer_id not in participants:
        participants.insert(0, template.payer_id)

    return Transaction(
        id=occurrence_id(template, day),
        created_at=stamp,
        updated_at=stamp,
        date=day,
        amount=template.amount,
        type=template.type,
        category_id=template.category_id,
        payer_id=template.payer_id,
        participant_ids=participants,
        note=template.name,
        merchant=template.merchant,
        source=TransactionSource.MANUAL,
        currency=template.currency,
    )


def mark_executed(template: RecurringTemplate, day: date) -> RecurringTemplate:
    """Return a copy of the template advanced past the given occurrence."""
    return template.model_copy(update={
        "executed_count": template.executed_count + 1,
        "last_executed_date": day,
    })


class ScheduleResult(BaseModel):
    """Output of one scheduler run."""

    transactions: list[Transaction] = Field(
        default_factory=list,
        description="Occurrences from auto_add templates, ready to upsert"
    )
    pending: list[Transaction] = Field(
        default_factory=list,
        description="Due occurrences that need user confirmation"
    )
    templates: list[RecurringTemplate] = Field(
        default_factory=list,
        description="Templates with updated execution state"
    )


class RecurringScheduler:
    """
    Materializes due occurrences, catching up on days missed since a
    template last ran (bounded by recurring_catch_up_days).
    """

    def __init__(self, settings: Optional[AppSettings] = None):
        self._settings = settings or get_settings().app

    def due_days(self, template: RecurringTemplate, today: date) -> list[date]:
        """Every day in the catch-up window on which the template fires."""
        start = today - timedelta(days=self._settings.recurring_catch_up_days)
        start = max(start, template.created_at.date())
        if template.last_executed_date is not None:
            start = max(start, template.last_executed_date + timedelta(days=1))

        days = []
        state = template
        day = start
        while day <= today:
            if should_execute_on(state, day):
                days.append(day)
                state = mark_executed(state, day)
            day += timedelta(days=1)
        return days

    def run(self, templates: list[RecurringTemplate], today: Optional[date] = None) -> ScheduleResult:
        today = today or utc_now().date()
        result = ScheduleResult()

        for template in templates:
            days = self.due_days(template, today)
            if not days:
                result.templates.append(template)
                continue

            occurrences = [materialize(template, day) for day in days]
            if template.auto_add:
                for day in days:
                    template = mark_executed(template, day)
                result.transactions.extend(occurrences)
            else:
                result.pending.extend(occurrences)
            result.templates.append(template)

            logger.info(
                "recurring_due",
                template_id=str(template.id),
                occurrences=len(days),
                auto_add=template.auto_add,
            )

        return result

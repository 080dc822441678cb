import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from croniter import CroniterError, croniter
from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, PositiveInt, ValidationError

from kv_cron.errors import ScheduleError

logger = logging.getLogger(__name__)

WILDCARD = "*"

# Order matters: it is the field order of the cron expression.
SCHEDULE_FIELD_NAMES = ("second", "minute", "hour", "day_of_month", "month", "day_of_week")

SCHEDULE_FIELD_MAX = {
    "second": 59,
    "minute": 59,
    "hour": 23,
    "day_of_month": 31,
    "month": 12,
    "day_of_week": 6,
}


class CronScheduleRange(BaseModel):
    """
    A range of values within one cron field, e.g. ``1-10/2`` or ``*/5``.
    """
    model_config = ConfigDict(extra="forbid")

    start: Union[NonNegativeInt, Literal["*"]] = Field(WILDCARD, description="First value of the range, or '*' for every value")
    end: Optional[NonNegativeInt] = Field(None, description="Last value of the range (inclusive)")
    step: Optional[PositiveInt] = Field(None, description="Increment between values")


CronScheduleField = Union[NonNegativeInt, CronScheduleRange]
CronScheduleValue = Union[CronScheduleField, Annotated[List[CronScheduleField], Field(min_length=1)]]


class CronSchedule(BaseModel):
    """
    JSON-serializable representation of a cron schedule.
    Absent fields mean "every". ``second`` is only emitted when it is set.
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    second: Optional[CronScheduleValue] = None
    minute: Optional[CronScheduleValue] = None
    hour: Optional[CronScheduleValue] = None
    day_of_month: Optional[CronScheduleValue] = Field(None, alias="dayOfMonth")
    month: Optional[CronScheduleValue] = None
    day_of_week: Optional[CronScheduleValue] = Field(None, alias="dayOfWeek")

    def to_cron_string(self) -> str:
        names = SCHEDULE_FIELD_NAMES if self.second is not None else SCHEDULE_FIELD_NAMES[1:]
        parts = []
        for name in names:
            value = getattr(self, name)
            if value is None:
                parts.append(WILDCARD)
            elif isinstance(value, list):
                parts.append(",".join(field_to_string(item, name) for item in value))
            else:
                parts.append(field_to_string(value, name))
        return " ".join(parts)


Schedule = Union[str, CronSchedule]


def field_to_string(field: CronScheduleField, name: str) -> str:
    """
    Convert one structured cron field value to its textual form.

    Raises:
        ScheduleError: If a range is missing the bounds needed to express it.
    """
    if isinstance(field, int):
        return str(field)

    step = f"/{field.step}" if field.step is not None else ""
    if field.start == WILDCARD:
        if field.end is not None:
            raise ScheduleError(f"Range in field '{name}' has an end but no numeric start")
        return f"{WILDCARD}{step}"

    if field.end is not None:
        return f"{field.start}-{field.end}{step}"
    if field.step is not None:
        return f"{field.start}-{SCHEDULE_FIELD_MAX[name]}{step}"
    raise ScheduleError(f"Range in field '{name}' needs an end or a step")


def parse_schedule(schedule: Union[str, CronSchedule, Dict[str, Any]]) -> Schedule:
    """
    Normalize user input into either a cron string or a validated CronSchedule.
    """
    if isinstance(schedule, (str, CronSchedule)):
        return schedule
    if isinstance(schedule, dict):
        try:
            return CronSchedule.model_validate(schedule)
        except ValidationError as e:
            raise ScheduleError(f"Invalid structured schedule: {e}") from e
    raise ScheduleError(f"Unsupported schedule type: {type(schedule).__name__}")


def to_cron_string(schedule: Union[str, CronSchedule, Dict[str, Any]]) -> str:
    schedule = parse_schedule(schedule)
    if isinstance(schedule, str):
        return schedule.strip()
    return schedule.to_cron_string()


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        logger.warning("Datetime %s does not include a timezone. Defaulting to UTC.", value.isoformat())
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ResolvedSchedule:
    """
    A schedule whose cron expression has been parsed and validated.
    Deterministic: the same anchor always yields the same next occurrence.
    """

    def __init__(self, expression: str):
        try:
            # Parsing validates the syntax; get_next rejects dates that never occur (e.g. Feb 30).
            croniter(expression, datetime.now(timezone.utc), second_at_beginning=True).get_next(datetime)
        except (ValueError, KeyError) as e:
            raise ScheduleError(f"Invalid cron expression '{expression}': {e}") from e
        self.expression = expression

    def next_after(self, date: Optional[datetime] = None) -> datetime:
        """
        Return the first occurrence strictly after ``date`` (default: now).
        """
        anchor = as_utc(date) if date is not None else datetime.now(timezone.utc)
        try:
            return croniter(self.expression, anchor, second_at_beginning=True).get_next(datetime)
        except CroniterError as e:
            raise ScheduleError(f"No occurrence of '{self.expression}' after {anchor.isoformat()}: {e}") from e

    def delay_ms(self, date: Optional[datetime] = None) -> int:
        anchor = as_utc(date) if date is not None else datetime.now(timezone.utc)
        delta = self.next_after(anchor) - anchor
        return max(0, int(delta.total_seconds() * 1000))

    def __repr__(self) -> str:
        return f"ResolvedSchedule({self.expression!r})"


def resolve(schedule: Union[str, CronSchedule, Dict[str, Any]]) -> ResolvedSchedule:
    return ResolvedSchedule(to_cron_string(schedule))


def next_occurrence(schedule: Union[str, CronSchedule, Dict[str, Any]], date: Optional[datetime] = None) -> datetime:
    return resolve(schedule).next_after(date)


def delay_ms(schedule: Union[str, CronSchedule, Dict[str, Any], ResolvedSchedule], date: Optional[datetime] = None) -> int:
    """
    Milliseconds from ``date`` (default: now) until the next occurrence, never negative.
    """
    if not isinstance(schedule, ResolvedSchedule):
        schedule = resolve(schedule)
    return schedule.delay_ms(date)

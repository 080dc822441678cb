import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, PositiveInt, ValidationError, field_validator

from kv_cron.domain.schedule import CronSchedule, Schedule, as_utc, parse_schedule

logger = logging.getLogger(__name__)


class Occurrence(BaseModel):
    """
    Queue payload for one scheduled firing of a job.
    The same nonce is reused when a recurring occurrence reschedules itself.
    """
    model_config = ConfigDict(populate_by_name=True)

    nonce: str = Field(..., description="Token identifying this occurrence")
    name: str = Field(..., description="Name of the registered job")
    schedule: Union[str, CronSchedule] = Field(..., description="Schedule used to compute the next occurrence")
    backoff_schedule: Optional[List[NonNegativeInt]] = Field(None, alias="backoffSchedule", description="Commit-retry delays in milliseconds")
    date: Optional[datetime] = Field(None, description="Anchor time the delay of this occurrence was computed from")
    epoch: Optional[str] = Field(None, description="Token of the enqueue that published this message")

    @field_validator("date")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None

    @classmethod
    def parse(cls, message: Any) -> Optional["Occurrence"]:
        """
        Return the occurrence carried by ``message``, or None when the message is
        not an occurrence. Queues may be shared, so foreign messages are expected.
        """
        if not isinstance(message, dict):
            return None
        if not isinstance(message.get("nonce"), str) or not isinstance(message.get("name"), str):
            return None
        try:
            return cls.model_validate(message)
        except ValidationError as e:
            logger.debug("Ignoring message that is not a valid occurrence: %s", e)
            return None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OccurrenceRecord(BaseModel):
    """
    Persisted marker whose existence means the occurrence is still live.
    ``epoch`` identifies which delivery of a recurring nonce is the live one.
    """
    amount: Optional[PositiveInt] = Field(None, description="Remaining executions; None means unbounded")
    date: Optional[datetime] = Field(None, description="Anchor of the live occurrence message")
    epoch: Optional[str] = Field(None, description="Token of the live occurrence message")

    @field_validator("date")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None

    @property
    def is_last(self) -> bool:
        return self.amount is not None and self.amount <= 1

    def matches(self, occurrence: Occurrence) -> bool:
        # Records written without an epoch accept any delivery for their nonce.
        return self.epoch is None or self.epoch == occurrence.epoch

    def to_value(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class EnqueueOptions(BaseModel):
    """
    Per-call options of ``KvCron.enqueue``.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    schedule: Union[str, CronSchedule] = Field(..., description="Cron expression or structured schedule")
    date: Optional[datetime] = Field(None, description="Anchor time, defaults to now")
    amount: Optional[PositiveInt] = Field(None, description="Number of executions; None repeats forever")
    backoff_schedule: Optional[List[NonNegativeInt]] = Field(None, alias="backoffSchedule", description="Commit-retry delays in milliseconds")
    cancellation_signal: Optional[asyncio.Event] = Field(None, alias="cancellationSignal", description="Aborts the occurrence when set")

    @field_validator("schedule", mode="before")
    def check_schedule(cls, v: Any) -> Schedule:
        return parse_schedule(v)

    def anchor(self) -> datetime:
        return as_utc(self.date) if self.date is not None else datetime.now(timezone.utc)

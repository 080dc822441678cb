import inspect
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from kv_cron.domain.occurrence import Occurrence, OccurrenceRecord
from kv_cron.domain.schedule import as_utc
from kv_cron.errors import EnqueueConflict, EnqueueFailed, ProcessFailed, ScheduleError
from kv_cron.job_registry import JobRegistry
from kv_cron.keys import KeySpace
from kv_cron.operations.enqueue import enqueue_occurrence
from kv_cron.storages.protocol import KvEntry, KvStore

logger = logging.getLogger(__name__)


class ProcessOutcome(str, Enum):
    IGNORED = "ignored"
    STALE = "stale"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    ABORTED = "aborted"


async def process_occurrence(
    kv: KvStore,
    keys: KeySpace,
    registry: JobRegistry,
    message: Any,
    date: Optional[datetime] = None,
) -> ProcessOutcome:
    """
    Handle one delivered queue message.

    Messages that are not occurrences are ignored. Deliveries whose record is
    missing, or belongs to a later epoch of the same nonce, are stale and do
    nothing. A live delivery runs its handler once, then either reschedules the
    occurrence under the same nonce or deletes the record when the last
    execution is used up, and finally bumps the processed counter.

    A handler error does not skip rescheduling; it is re-raised afterwards.
    If the occurrence is aborted while its handler runs, the execution still
    counts but nothing is rescheduled, and the outcome is ABORTED.

    Raises:
        UnknownJob: If the occurrence names a job that is not registered.
        ProcessFailed: If rescheduling, finalizing or counting did not commit.
    """
    occurrence = Occurrence.parse(message)
    if occurrence is None:
        return ProcessOutcome.IGNORED

    job_key = keys.job_key(occurrence.nonce)
    entry = await kv.get(job_key)
    if not entry.exists:
        logger.debug("Occurrence %s is not live, skipping delivery", occurrence.nonce)
        return ProcessOutcome.STALE

    try:
        record = OccurrenceRecord.model_validate(entry.value)
    except ValidationError as e:
        raise ProcessFailed(occurrence.nonce, f"corrupt record: {e}") from e
    if not record.matches(occurrence):
        logger.debug("Delivery of occurrence %s belongs to an earlier epoch, skipping", occurrence.nonce)
        return ProcessOutcome.STALE

    handler = registry.get_handler(occurrence.name)
    anchor = as_utc(date) if date is not None else datetime.now(timezone.utc)

    try:
        result = handler()
        if inspect.isawaitable(result):
            await result
    finally:
        outcome = await _finalize(kv, keys, occurrence, record, entry, anchor)
    return outcome


async def _finalize(
    kv: KvStore,
    keys: KeySpace,
    occurrence: Occurrence,
    record: OccurrenceRecord,
    entry: KvEntry,
    anchor: datetime,
) -> ProcessOutcome:
    if record.is_last:
        result = await kv.atomic().check(entry.key, entry.versionstamp).delete(entry.key).commit()
        if result.ok:
            outcome = ProcessOutcome.COMPLETED
        else:
            current = await kv.get(entry.key)
            if current.versionstamp == entry.versionstamp:
                raise ProcessFailed(occurrence.nonce, "could not delete the occurrence record")
            outcome = _lost_record(occurrence, current)
    else:
        try:
            await enqueue_occurrence(
                kv,
                keys,
                nonce=occurrence.nonce,
                name=occurrence.name,
                schedule=occurrence.schedule,
                amount=record.amount - 1 if record.amount is not None else None,
                backoff_schedule=occurrence.backoff_schedule,
                date=anchor,
                expected_versionstamp=entry.versionstamp,
            )
            outcome = ProcessOutcome.RESCHEDULED
        except EnqueueConflict:
            outcome = _lost_record(occurrence, await kv.get(entry.key))
        except EnqueueFailed as e:
            raise ProcessFailed(occurrence.nonce, "could not reschedule the occurrence") from e
        except ScheduleError as e:
            raise ProcessFailed(occurrence.nonce, f"could not compute the next occurrence: {e}") from e

    if outcome == ProcessOutcome.STALE:
        return outcome
    result = await kv.atomic().sum(keys.processed_count_key, 1).commit()
    if not result.ok:
        raise ProcessFailed(occurrence.nonce, "could not update the processed count")
    logger.debug("Processed occurrence %s of job '%s': %s", occurrence.nonce, occurrence.name, outcome.value)
    return outcome


def _lost_record(occurrence: Occurrence, current: KvEntry) -> ProcessOutcome:
    # The record moved under the handler: gone means aborted, rewritten means
    # a concurrent delivery of the same message already finalized it.
    if not current.exists:
        logger.info("Occurrence %s was aborted while its handler ran", occurrence.nonce)
        return ProcessOutcome.ABORTED
    logger.debug("Occurrence %s was finalized by a concurrent delivery", occurrence.nonce)
    return ProcessOutcome.STALE

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from kv_cron.domain.occurrence import Occurrence, OccurrenceRecord
from kv_cron.domain.schedule import Schedule, as_utc, delay_ms, resolve
from kv_cron.errors import EnqueueConflict, EnqueueFailed
from kv_cron.keys import KeySpace
from kv_cron.storages.protocol import KvStore

logger = logging.getLogger(__name__)


class EnqueueResult(BaseModel):
    ok: bool = True
    nonce: str
    versionstamp: Optional[str] = None
    scheduled_for: datetime = Field(..., description="Next occurrence computed from the anchor")


async def enqueue_occurrence(
    kv: KvStore,
    keys: KeySpace,
    nonce: str,
    name: str,
    schedule: Schedule,
    amount: Optional[int] = None,
    backoff_schedule: Optional[List[int]] = None,
    date: Optional[datetime] = None,
    check: bool = True,
    expected_versionstamp: Optional[str] = None,
) -> EnqueueResult:
    """
    Publish the next occurrence of a job and mark it live, in one commit.

    The message, the occurrence record and the enqueued counter are written
    atomically. A failed commit is retried once per entry of backoff_schedule,
    sleeping that many milliseconds first.

    Args:
        check (bool): Condition the commit on the record key being at
            expected_versionstamp (None: the nonce must not be live yet).

    Raises:
        ScheduleError: If the schedule cannot be resolved. Never retried.
        EnqueueConflict: If the checked record moved away from
            expected_versionstamp. Never retried.
        EnqueueFailed: If every attempt failed to commit.
    """
    resolved = resolve(schedule)
    anchor = as_utc(date) if date is not None else datetime.now(timezone.utc)
    scheduled_for = resolved.next_after(anchor)
    delay = delay_ms(resolved, anchor)

    epoch = uuid.uuid4().hex
    occurrence = Occurrence(
        nonce=nonce,
        name=name,
        schedule=schedule,
        backoff_schedule=backoff_schedule,
        date=anchor,
        epoch=epoch,
    )
    record = OccurrenceRecord(amount=amount, date=anchor, epoch=epoch)
    job_key = keys.job_key(nonce)
    delays = list(backoff_schedule or [])

    attempt = 0
    while True:
        op = kv.atomic()
        if check:
            op.check(job_key, expected_versionstamp)
        result = await (
            op.enqueue(occurrence.to_payload(), delay_ms=delay)
            .set(job_key, record.to_value())
            .sum(keys.enqueued_count_key, 1)
            .commit()
        )
        if result.ok:
            logger.debug("Enqueued occurrence %s of job '%s' for %s", nonce, name, scheduled_for.isoformat())
            return EnqueueResult(nonce=nonce, versionstamp=result.versionstamp, scheduled_for=scheduled_for)

        if check and (await kv.get(job_key)).versionstamp != expected_versionstamp:
            raise EnqueueConflict(nonce, attempt + 1)
        if attempt >= len(delays):
            raise EnqueueFailed(nonce, attempt + 1)
        logger.warning(
            "Enqueue commit for occurrence %s failed, retrying in %d ms (attempt %d of %d)",
            nonce, delays[attempt], attempt + 1, len(delays) + 1,
        )
        await asyncio.sleep(delays[attempt] / 1000)
        attempt += 1

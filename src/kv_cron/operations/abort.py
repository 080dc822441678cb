import logging

from kv_cron.errors import AbortFailed
from kv_cron.keys import KeySpace
from kv_cron.storages.protocol import KvStore

logger = logging.getLogger(__name__)


async def abort_occurrence(kv: KvStore, keys: KeySpace, nonce: str) -> bool:
    """
    Cancel a pending occurrence by deleting its record.

    The queued message stays in the store; its delivery becomes a no-op
    because the record is gone. Aborting an occurrence that is no longer
    live changes nothing and returns False.

    Raises:
        AbortFailed: If the commit did not go through. Not retried.
    """
    job_key = keys.job_key(nonce)
    entry = await kv.get(job_key)
    if not entry.exists:
        logger.debug("Occurrence %s is not live, nothing to abort", nonce)
        return False

    # The counter floors at 0 inside the store, so a drifted counter never wraps.
    result = await (
        kv.atomic()
        .check(job_key, entry.versionstamp)
        .delete(job_key)
        .sum(keys.enqueued_count_key, -1)
        .commit()
    )
    if not result.ok:
        raise AbortFailed(nonce)
    logger.debug("Aborted occurrence %s", nonce)
    return True

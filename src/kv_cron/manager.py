import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from kv_cron.domain.occurrence import EnqueueOptions
from kv_cron.job_registry import JobHandler, JobRegistry
from kv_cron.keys import DEFAULT_KEY_PREFIX, KeySpace, KvKey
from kv_cron.operations.abort import abort_occurrence
from kv_cron.operations.enqueue import EnqueueResult, enqueue_occurrence
from kv_cron.operations.process import ProcessOutcome, process_occurrence
from kv_cron.storages.protocol import KvStore

logger = logging.getLogger(__name__)


def generate_nonce() -> str:
    return f"occ_{uuid.uuid4().hex}"


class KvCronOptions(BaseModel):
    """
    Configuration of a KvCron instance.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    kv: Any = Field(..., description="Store implementing the KvStore protocol")
    jobs: Dict[str, Callable[..., Any]] = Field(..., description="Job name to zero-argument handler")
    kv_key_prefix: KvKey = Field(DEFAULT_KEY_PREFIX, alias="kvKeyPrefix", description="Prefix of every key kv_cron writes")
    generate_nonce: Callable[[], str] = Field(generate_nonce, alias="generateNonce", description="Produces the nonce of each new occurrence")
    enforce_unique_nonce: bool = Field(True, description="Reject an enqueue whose nonce is already live")


class CronStats(BaseModel):
    enqueued_count: int = 0
    processed_count: int = 0


class KvCron:
    """
    Binds a registry of job handlers to a store and exposes enqueue/process.

    Run ``process`` (or ``listen``) for every message the store's queue delivers.
    """

    def __init__(
        self,
        kv: KvStore,
        jobs: Mapping[str, JobHandler],
        kv_key_prefix: Union[str, Sequence[str]] = DEFAULT_KEY_PREFIX,
        generate_nonce: Callable[[], str] = generate_nonce,
        enforce_unique_nonce: bool = True,
    ):
        self.kv: KvStore = kv
        self.registry: JobRegistry = JobRegistry(jobs)
        self.keys: KeySpace = KeySpace(prefix=kv_key_prefix)
        self.generate_nonce = generate_nonce
        self.enforce_unique_nonce = enforce_unique_nonce
        self._cancellation_listeners: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_options(cls, options: KvCronOptions) -> "KvCron":
        return cls(
            kv=options.kv,
            jobs=options.jobs,
            kv_key_prefix=options.kv_key_prefix,
            generate_nonce=options.generate_nonce,
            enforce_unique_nonce=options.enforce_unique_nonce,
        )

    async def enqueue(self, name: str, options: Union[EnqueueOptions, Dict[str, Any]]) -> EnqueueResult:
        """
        Schedule the next occurrence of a registered job.

        Args:
            name (str): Registered job name.
            options (EnqueueOptions): Schedule, anchor date, amount, backoff and cancellation signal.

        Raises:
            UnknownJob: If the job is not registered.
            ScheduleError: If the schedule is malformed.
            EnqueueFailed: If the commit failed on every attempt.
        """
        if not isinstance(options, EnqueueOptions):
            options = EnqueueOptions.model_validate(options)
        self.registry.get_handler(name)

        nonce = self.generate_nonce()
        result = await enqueue_occurrence(
            self.kv,
            self.keys,
            nonce=nonce,
            name=name,
            schedule=options.schedule,
            amount=options.amount,
            backoff_schedule=options.backoff_schedule,
            date=options.anchor(),
            check=self.enforce_unique_nonce,
        )
        if options.cancellation_signal is not None:
            self._watch_cancellation(nonce, options.cancellation_signal)
        return result

    async def abort(self, nonce: str) -> bool:
        """
        Cancel a pending occurrence. Returns False if it was no longer live.

        Raises:
            AbortFailed: If the store did not commit the cancellation.
        """
        listener = self._cancellation_listeners.pop(nonce, None)
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
        return await abort_occurrence(self.kv, self.keys, nonce)

    async def process(self, message: Any, date: Optional[datetime] = None) -> ProcessOutcome:
        """
        Handle a message delivered by the store's queue.

        Raises:
            UnknownJob: If the occurrence names an unregistered job.
            ProcessFailed: If the store did not commit the follow-up writes.
        """
        outcome = await process_occurrence(self.kv, self.keys, self.registry, message, date)
        if outcome in (ProcessOutcome.COMPLETED, ProcessOutcome.ABORTED):
            listener = self._cancellation_listeners.pop(message["nonce"], None)
            if listener is not None:
                listener.cancel()
        return outcome

    async def listen(self) -> None:
        """
        Process queue deliveries until the store stops listening.
        """
        await self.kv.listen_queue(self.process)

    async def stats(self) -> CronStats:
        enqueued = await self.kv.get(self.keys.enqueued_count_key)
        processed = await self.kv.get(self.keys.processed_count_key)
        return CronStats(enqueued_count=enqueued.value or 0, processed_count=processed.value or 0)

    async def close(self) -> None:
        listeners = list(self._cancellation_listeners.values())
        self._cancellation_listeners.clear()
        for listener in listeners:
            listener.cancel()
        await asyncio.gather(*listeners, return_exceptions=True)

    def _watch_cancellation(self, nonce: str, signal: asyncio.Event) -> None:
        listener = asyncio.create_task(self._abort_when_set(nonce, signal))
        self._cancellation_listeners[nonce] = listener
        listener.add_done_callback(lambda task: self._handle_listener_done(nonce, task))

    async def _abort_when_set(self, nonce: str, signal: asyncio.Event) -> None:
        await signal.wait()
        await self.abort(nonce)

    def _handle_listener_done(self, nonce: str, task: asyncio.Task) -> None:
        if self._cancellation_listeners.get(nonce) is task:
            del self._cancellation_listeners[nonce]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Cancelling occurrence %s failed: %s", nonce, error, exc_info=error)


def make_kv_cron(options: Optional[KvCronOptions] = None, **kwargs: Any) -> KvCron:
    """
    Build a KvCron from KvCronOptions or from the same fields as keyword arguments.
    """
    if options is None:
        options = KvCronOptions(**kwargs)
    return KvCron.from_options(options)

"""
Durable Cron Jobs on a Transactional Key-Value Store

This package schedules recurring or delayed job invocations on top of a store
that offers atomic transactions and a delayed queue with at-least-once delivery.

Core Concepts:

Job:
    A named, zero-argument handler registered with KvCron.

Occurrence:
    One scheduled firing of a job, identified by a nonce. It travels through the
    store's queue as a message and is rescheduled under the same nonce while it
    recurs.

Record:
    The stored marker of a live occurrence. A delivery only runs its handler
    while the record exists, which turns at-least-once delivery into a single
    execution per occurrence. Aborting an occurrence deletes its record.

Relationships:
    - A Job can have many Occurrences; each Occurrence has at most one Record.
"""

from .domain import CronSchedule, CronScheduleRange, EnqueueOptions, Occurrence, OccurrenceRecord
from .domain.schedule import next_occurrence, resolve, to_cron_string
from .errors import AbortFailed, EnqueueConflict, EnqueueFailed, KvCronError, ProcessFailed, ScheduleError, UnknownJob
from .keys import DEFAULT_KEY_PREFIX, KeySpace
from .manager import CronStats, KvCron, KvCronOptions, make_kv_cron
from .operations.enqueue import EnqueueResult
from .operations.process import ProcessOutcome

__all__ = [
    "AbortFailed",
    "CronSchedule",
    "CronScheduleRange",
    "CronStats",
    "DEFAULT_KEY_PREFIX",
    "EnqueueConflict",
    "EnqueueFailed",
    "EnqueueOptions",
    "EnqueueResult",
    "KeySpace",
    "KvCron",
    "KvCronError",
    "KvCronOptions",
    "Occurrence",
    "OccurrenceRecord",
    "ProcessFailed",
    "ProcessOutcome",
    "ScheduleError",
    "UnknownJob",
    "make_kv_cron",
    "next_occurrence",
    "resolve",
    "to_cron_string",
]

import asyncio
import time
from datetime import datetime, timezone
from typing import List

import pytest

from kv_cron import (
    EnqueueFailed,
    EnqueueOptions,
    KvCron,
    KvCronOptions,
    ProcessOutcome,
    ScheduleError,
    UnknownJob,
    make_kv_cron,
)
from kv_cron.storages.sqlalchemy import InMemoryKvStore


@pytest.fixture(scope="function")
def calls() -> List[str]:
    return []


@pytest.fixture(scope="function")
def kv_cron(kv, calls: List[str]) -> KvCron:
    return KvCron(kv, {"main": lambda: calls.append("main")}, kv_key_prefix=["kv_cron_test"])


async def wait_until_absent(kv, key, attempts: int = 100) -> None:
    for _ in range(attempts):
        if not (await kv.get(key)).exists:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{key} still exists")


@pytest.mark.asyncio
async def test_enqueue_and_process(kv_cron: KvCron, calls, take_messages):
    result = await kv_cron.enqueue("main", EnqueueOptions(schedule={"minute": 1}, amount=1))
    assert result.ok is True
    assert result.nonce.startswith("occ_")

    [message] = await take_messages()
    assert await kv_cron.process(message) == ProcessOutcome.COMPLETED
    assert calls == ["main"]

    stats = await kv_cron.stats()
    assert stats.enqueued_count == 1
    assert stats.processed_count == 1


@pytest.mark.asyncio
async def test_enqueue_accepts_plain_options(kv_cron: KvCron, kv):
    result = await kv_cron.enqueue("main", {"schedule": "*/5 * * * *", "amount": 2, "backoffSchedule": [1]})
    record = await kv.get(kv_cron.keys.job_key(result.nonce))
    assert record.value["amount"] == 2


@pytest.mark.asyncio
async def test_enqueue_uses_anchor_date(kv_cron: KvCron):
    anchor = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)
    result = await kv_cron.enqueue("main", {"schedule": {"hour": 6, "minute": 0}, "date": anchor})
    assert result.scheduled_for == datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_enqueue_unknown_job(kv_cron: KvCron, kv):
    with pytest.raises(UnknownJob):
        await kv_cron.enqueue("other", {"schedule": "* * * * *"})
    assert await kv.pending_messages() == 0


@pytest.mark.asyncio
async def test_enqueue_malformed_schedule(kv_cron: KvCron, kv):
    with pytest.raises(ScheduleError):
        await kv_cron.enqueue("main", {"schedule": {"minute": {"start": 5}}})
    with pytest.raises(ScheduleError):
        await kv_cron.enqueue("main", {"schedule": "every day"})
    assert await kv.pending_messages() == 0


@pytest.mark.asyncio
async def test_process_unknown_job_from_other_manager(kv, take_messages):
    producer = KvCron(kv, {"main": lambda: None})
    consumer = KvCron(kv, {"other": lambda: None})
    result = await producer.enqueue("main", {"schedule": "* * * * *"})
    [message] = await take_messages()
    before = await kv.get(producer.keys.job_key(result.nonce))

    with pytest.raises(UnknownJob):
        await consumer.process(message)

    after = await kv.get(producer.keys.job_key(result.nonce))
    assert after.versionstamp == before.versionstamp
    assert (await consumer.stats()).processed_count == 0


@pytest.mark.asyncio
async def test_process_ignores_foreign_messages(kv_cron: KvCron):
    assert await kv_cron.process({"channel": "something else"}) == ProcessOutcome.IGNORED


@pytest.mark.asyncio
async def test_cancellation_signal_aborts_pending_occurrence(kv_cron: KvCron, kv, calls, take_messages):
    signal = asyncio.Event()
    result = await kv_cron.enqueue("main", EnqueueOptions(schedule="* * * * *", cancellation_signal=signal))
    assert (await kv_cron.stats()).enqueued_count == 1

    signal.set()
    await wait_until_absent(kv, kv_cron.keys.job_key(result.nonce))

    [message] = await take_messages()
    assert await kv_cron.process(message) == ProcessOutcome.STALE
    assert calls == []
    assert (await kv_cron.stats()).enqueued_count == 0


@pytest.mark.asyncio
async def test_signal_set_before_enqueue_still_aborts(kv_cron: KvCron, kv):
    signal = asyncio.Event()
    signal.set()
    result = await kv_cron.enqueue("main", {"schedule": "* * * * *", "cancellationSignal": signal})
    await wait_until_absent(kv, kv_cron.keys.job_key(result.nonce))
    assert (await kv_cron.stats()).enqueued_count == 0


@pytest.mark.asyncio
async def test_signal_after_delivery_does_not_undo_execution(kv_cron: KvCron, calls, take_messages):
    signal = asyncio.Event()
    await kv_cron.enqueue("main", EnqueueOptions(schedule="* * * * *", amount=1, cancellation_signal=signal))
    [message] = await take_messages()
    assert await kv_cron.process(message) == ProcessOutcome.COMPLETED

    signal.set()
    await asyncio.sleep(0.01)
    assert calls == ["main"]
    stats = await kv_cron.stats()
    assert stats.enqueued_count == 1
    assert stats.processed_count == 1


@pytest.mark.asyncio
async def test_signal_during_running_handler_aborts_without_backoff(kv, take_messages):
    started = asyncio.Event()
    release = asyncio.Event()
    calls = []

    async def blocking():
        calls.append("blocking")
        started.set()
        await release.wait()

    kv_cron = KvCron(kv, {"blocking": blocking}, kv_key_prefix=["kv_cron_test"])
    signal = asyncio.Event()
    result = await kv_cron.enqueue(
        "blocking", {"schedule": "* * * * *", "backoffSchedule": [5_000, 5_000], "cancellationSignal": signal},
    )
    [message] = await take_messages()

    delivery = asyncio.create_task(kv_cron.process(message))
    await asyncio.wait_for(started.wait(), timeout=1)
    signal.set()
    await wait_until_absent(kv, kv_cron.keys.job_key(result.nonce))

    started_at = time.monotonic()
    release.set()
    assert await asyncio.wait_for(delivery, timeout=2) == ProcessOutcome.ABORTED
    assert time.monotonic() - started_at < 2

    assert calls == ["blocking"]
    stats = await kv_cron.stats()
    assert stats.enqueued_count == 0
    assert stats.processed_count == 1
    assert (await kv.get(kv_cron.keys.job_key(result.nonce))).exists is False
    assert await kv.pending_messages() == 0
    assert result.nonce not in kv_cron._cancellation_listeners

@pytest.mark.asyncio
async def test_abort(kv_cron: KvCron, kv):
    result = await kv_cron.enqueue("main", {"schedule": "* * * * *"})
    assert await kv_cron.abort(result.nonce) is True
    assert await kv_cron.abort(result.nonce) is False
    assert (await kv.get(kv_cron.keys.job_key(result.nonce))).exists is False


@pytest.mark.asyncio
async def test_close_cancels_cancellation_listeners(kv_cron: KvCron, kv):
    signal = asyncio.Event()
    result = await kv_cron.enqueue("main", {"schedule": "* * * * *", "cancellation_signal": signal})
    await kv_cron.close()

    signal.set()
    await asyncio.sleep(0.01)
    assert (await kv.get(kv_cron.keys.job_key(result.nonce))).exists is True


@pytest.mark.asyncio
async def test_custom_nonce_generator_and_unique_check(kv):
    kv_cron = KvCron(kv, {"main": lambda: None}, generate_nonce=lambda: "fixed")
    result = await kv_cron.enqueue("main", {"schedule": "* * * * *"})
    assert result.nonce == "fixed"

    with pytest.raises(EnqueueFailed):
        await kv_cron.enqueue("main", {"schedule": "* * * * *"})


@pytest.mark.asyncio
async def test_duplicate_nonce_allowed_when_check_disabled(kv):
    kv_cron = KvCron(kv, {"main": lambda: None}, generate_nonce=lambda: "fixed", enforce_unique_nonce=False)
    await kv_cron.enqueue("main", {"schedule": "* * * * *"})
    await kv_cron.enqueue("main", {"schedule": "* * * * *"})
    assert (await kv_cron.stats()).enqueued_count == 2


@pytest.mark.asyncio
async def test_key_prefixes_are_isolated(kv):
    first = KvCron(kv, {"main": lambda: None}, kv_key_prefix="first")
    second = KvCron(kv, {"main": lambda: None}, kv_key_prefix=["second", "nested"])
    await first.enqueue("main", {"schedule": "* * * * *"})

    assert (await first.stats()).enqueued_count == 1
    assert (await second.stats()).enqueued_count == 0
    assert second.keys.enqueued_count_key == ("second", "nested", "enqueued_count")


@pytest.mark.asyncio
async def test_make_kv_cron_from_options(kv):
    kv_cron = make_kv_cron(kv=kv, jobs={"main": lambda: None}, kvKeyPrefix=["custom"])
    assert kv_cron.keys.prefix == ("custom",)

    kv_cron = make_kv_cron(KvCronOptions(kv=kv, jobs={"main": lambda: None}))
    assert kv_cron.keys.prefix == ("kv_cron",)


def test_invalid_registry_is_rejected_at_construction():
    with pytest.raises(ValueError):
        KvCron(object(), {"main": "not callable"})


@pytest.mark.asyncio
async def test_listen_runs_recurring_job():
    store = InMemoryKvStore(poll_interval=0.05)
    await store.create_tables()
    done = asyncio.Event()
    calls: List[str] = []

    def main():
        calls.append("main")
        if len(calls) == 2:
            done.set()

    kv_cron = KvCron(store, {"main": main})
    await kv_cron.enqueue("main", EnqueueOptions(schedule="* * * * * *", amount=2))
    listener = asyncio.create_task(kv_cron.listen())
    try:
        await asyncio.wait_for(done.wait(), timeout=10)
    finally:
        await store.close()
        await asyncio.wait_for(listener, timeout=5)

    assert calls == ["main", "main"]

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional

import pytest
import pytest_asyncio

from kv_cron.keys import KeySpace
from kv_cron.storages.protocol import CommitResult
from kv_cron.storages.sqlalchemy import InMemoryKvStore, SqlAlchemyAtomicOperation


class FlakyKvStore(InMemoryKvStore):
    """
    In-memory store whose next ``failures`` commits report ok=False.
    """
    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self.failures = 0
        self.commit_attempts = 0

    async def _commit(self, op: SqlAlchemyAtomicOperation) -> CommitResult:
        self.commit_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            return CommitResult(ok=False)
        return await super()._commit(op)


def far_future() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=400)


@pytest_asyncio.fixture(scope="function")
async def kv():
    store = FlakyKvStore(redelivery_delay_ms=0)
    await store.create_tables()
    yield store
    await store.close()


@pytest.fixture(scope="function")
def keys() -> KeySpace:
    return KeySpace(prefix=("kv_cron_test",))


@pytest.fixture(scope="function")
def take_messages(kv: FlakyKvStore) -> Callable[..., Awaitable[List[Any]]]:
    """
    Pull every deliverable message off the queue without processing it.
    """
    async def _take(now: Optional[datetime] = None) -> List[Any]:
        messages: List[Any] = []

        async def collect(message: Any) -> None:
            messages.append(message)

        await kv.deliver_due(collect, now=now or far_future())
        return messages

    return _take

from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import BaseModel, Field

from kv_cron.keys import KvKey

QueueHandler = Callable[[Any], Awaitable[Any]]


class KvEntry(BaseModel):
    key: KvKey
    value: Any = None
    versionstamp: Optional[str] = Field(None, description="Version of the entry; None when the key does not exist")

    @property
    def exists(self) -> bool:
        return self.versionstamp is not None


class CommitResult(BaseModel):
    ok: bool
    versionstamp: Optional[str] = None


class AtomicOperation(Protocol):
    def check(self, key: KvKey, versionstamp: Optional[str]) -> "AtomicOperation":
        """Fail the commit unless the key is at this version. None means the key must not exist."""
        ...

    def set(self, key: KvKey, value: Any) -> "AtomicOperation":
        """Write a JSON-serializable value."""
        ...

    def delete(self, key: KvKey) -> "AtomicOperation":
        """Delete a key. Deleting a missing key is not an error."""
        ...

    def sum(self, key: KvKey, delta: int) -> "AtomicOperation":
        """Add delta to an unsigned 64-bit counter. The result never drops below 0."""
        ...

    def enqueue(self, payload: Any, delay_ms: int = 0) -> "AtomicOperation":
        """Publish a message that becomes deliverable after delay_ms."""
        ...

    async def commit(self) -> CommitResult:
        """Apply every mutation atomically. Return ok=False if a check failed or the commit did not go through."""
        ...


class KvStore(Protocol):
    async def get(self, key: KvKey) -> KvEntry:
        """Read a key. A missing key returns an entry with versionstamp None."""
        ...

    def atomic(self) -> AtomicOperation:
        """Start an atomic operation."""
        ...

    async def listen_queue(self, handler: QueueHandler) -> None:
        """Deliver each queued message to handler at least once after its delay elapses."""
        ...

import asyncio
import json
import logging
import time
from datetime import datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy import JSON, BigInteger, Column, Integer, String, func
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from kv_cron.keys import KvKey
from kv_cron.storages.protocol import CommitResult, KvEntry, KvStore, QueueHandler

logger = logging.getLogger(__name__)

Base = declarative_base()

U64_MAX = 2**64 - 1
VERSIONSTAMP_SEQUENCE = "versionstamp"


class KvEntryModel(Base):
    __tablename__ = 'kv_entries'

    key = Column(String, primary_key=True)
    value = Column(JSON)
    versionstamp = Column(String, nullable=False)


class QueueMessageModel(Base):
    __tablename__ = 'kv_queue'

    id = Column(Integer, primary_key=True, autoincrement=True)
    payload = Column(JSON, nullable=False)
    ready_at_ms = Column(BigInteger, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)


class SequenceModel(Base):
    __tablename__ = 'kv_meta'

    name = Column(String, primary_key=True)
    value = Column(BigInteger, nullable=False)


class _CheckFailed(Exception):
    pass


def _encode_key(key: KvKey) -> str:
    return json.dumps(list(key), separators=(",", ":"))


def _now_ms() -> int:
    return int(time.time() * 1000)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class SqlAlchemyAtomicOperation:
    """
    Buffers checks and mutations until ``commit`` applies them in one transaction.
    """

    def __init__(self, store: "SqlAlchemyKvStore"):
        self._store = store
        self.checks: List[Tuple[KvKey, Optional[str]]] = []
        self.mutations: List[Tuple[str, KvKey, Any]] = []
        self.messages: List[Tuple[Any, int]] = []

    def check(self, key: KvKey, versionstamp: Optional[str]) -> "SqlAlchemyAtomicOperation":
        self.checks.append((tuple(key), versionstamp))
        return self

    def set(self, key: KvKey, value: Any) -> "SqlAlchemyAtomicOperation":
        self.mutations.append(("set", tuple(key), value))
        return self

    def delete(self, key: KvKey) -> "SqlAlchemyAtomicOperation":
        self.mutations.append(("delete", tuple(key), None))
        return self

    def sum(self, key: KvKey, delta: int) -> "SqlAlchemyAtomicOperation":
        self.mutations.append(("sum", tuple(key), delta))
        return self

    def enqueue(self, payload: Any, delay_ms: int = 0) -> "SqlAlchemyAtomicOperation":
        if delay_ms < 0:
            raise ValueError("delay_ms must not be negative")
        self.messages.append((payload, delay_ms))
        return self

    async def commit(self) -> CommitResult:
        return await self._store._commit(self)


class SqlAlchemyKvStore(KvStore):
    """
    Transactional key-value store with a delayed queue, persisted through SQLAlchemy.

    Every session goes through one lock: SQLite allows a single writer and the
    in-memory variant shares one connection.
    """

    def __init__(
        self,
        db_url: str,
        poll_interval: float = 1.0,
        redelivery_delay_ms: int = 1000,
        max_delivery_attempts: int = 5,
        **engine_kwargs: Any,
    ):
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.poll_interval = poll_interval
        self.redelivery_delay_ms = redelivery_delay_ms
        self.max_delivery_attempts = max_delivery_attempts
        self._lock = asyncio.Lock()
        self._delivering = asyncio.Lock()
        self._closed = asyncio.Event()

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        self._closed.set()
        async with self._delivering:
            await self.engine.dispose()

    def atomic(self) -> SqlAlchemyAtomicOperation:
        return SqlAlchemyAtomicOperation(self)

    async def get(self, key: KvKey) -> KvEntry:
        key = tuple(key)
        async with self._lock:
            async with self.async_session() as session:
                db_entry = await session.get(KvEntryModel, _encode_key(key))
                if db_entry:
                    return KvEntry(key=key, value=db_entry.value, versionstamp=db_entry.versionstamp)
                return KvEntry(key=key)

    async def _commit(self, op: SqlAlchemyAtomicOperation) -> CommitResult:
        async with self._lock:
            try:
                async with self.async_session() as session:
                    async with session.begin():
                        for key, expected in op.checks:
                            db_entry = await session.get(KvEntryModel, _encode_key(key))
                            current = db_entry.versionstamp if db_entry else None
                            if current != expected:
                                logger.debug("Check failed for key %s: expected %s, found %s", key, expected, current)
                                raise _CheckFailed()

                        versionstamp = await self._next_versionstamp(session)
                        for kind, key, arg in op.mutations:
                            await self._apply(session, kind, key, arg, versionstamp)

                        ready_base = _now_ms()
                        for payload, delay_ms in op.messages:
                            session.add(QueueMessageModel(payload=payload, ready_at_ms=ready_base + delay_ms, attempts=0))
                return CommitResult(ok=True, versionstamp=versionstamp)
            except _CheckFailed:
                return CommitResult(ok=False)
            except OperationalError as e:
                logger.warning("Commit failed: %s", e)
                return CommitResult(ok=False)

    async def _next_versionstamp(self, session: AsyncSession) -> str:
        sequence = await session.get(SequenceModel, VERSIONSTAMP_SEQUENCE)
        if sequence is None:
            sequence = SequenceModel(name=VERSIONSTAMP_SEQUENCE, value=0)
            session.add(sequence)
        sequence.value += 1
        return f"{sequence.value:020d}"

    async def _apply(self, session: AsyncSession, kind: str, key: KvKey, arg: Any, versionstamp: str):
        encoded = _encode_key(key)
        db_entry = await session.get(KvEntryModel, encoded)
        if kind == "delete":
            if db_entry:
                await session.delete(db_entry)
        elif kind == "set":
            if db_entry:
                db_entry.value = arg
                db_entry.versionstamp = versionstamp
            else:
                session.add(KvEntryModel(key=encoded, value=arg, versionstamp=versionstamp))
        elif kind == "sum":
            current = db_entry.value if db_entry else 0
            if not isinstance(current, int):
                raise ValueError(f"Cannot sum into non-counter key {key}")
            total = min(max(current + arg, 0), U64_MAX)
            if db_entry:
                db_entry.value = total
                db_entry.versionstamp = versionstamp
            else:
                session.add(KvEntryModel(key=encoded, value=total, versionstamp=versionstamp))
        else:
            raise ValueError(f"Unsupported mutation: {kind}")
        await session.flush()

    async def pending_messages(self) -> int:
        async with self._lock:
            async with self.async_session() as session:
                result = await session.execute(select(func.count()).select_from(QueueMessageModel))
                return result.scalar_one()

    async def deliver_due(self, handler: QueueHandler, now: Optional[datetime] = None) -> int:
        """
        Deliver every message whose delay has elapsed by ``now``.
        A message is removed only once the handler returns; a failing handler
        gets the message again later until max_delivery_attempts is reached.

        Returns:
            int: Number of messages delivered successfully.
        """
        now_ms = _to_ms(now) if now is not None else _now_ms()
        async with self._delivering:
            async with self._lock:
                async with self.async_session() as session:
                    result = await session.execute(
                        select(QueueMessageModel)
                        .where(QueueMessageModel.ready_at_ms <= now_ms)
                        .order_by(QueueMessageModel.ready_at_ms, QueueMessageModel.id)
                    )
                    due = [(message.id, message.payload, message.attempts) for message in result.scalars()]

            delivered = 0
            for message_id, payload, attempts in due:
                try:
                    await handler(payload)
                except Exception:
                    logger.exception("Queue handler failed for message %s", message_id)
                    await self._redeliver_or_drop(message_id, attempts + 1, now_ms)
                    continue
                await self._ack(message_id)
                delivered += 1
            return delivered

    async def _ack(self, message_id: int):
        async with self._lock:
            async with self.async_session() as session:
                async with session.begin():
                    message = await session.get(QueueMessageModel, message_id)
                    if message:
                        await session.delete(message)

    async def _redeliver_or_drop(self, message_id: int, attempts: int, now_ms: int):
        async with self._lock:
            async with self.async_session() as session:
                async with session.begin():
                    message = await session.get(QueueMessageModel, message_id)
                    if message is None:
                        return
                    if attempts >= self.max_delivery_attempts:
                        logger.error("Dropping message %s after %d failed deliveries", message_id, attempts)
                        await session.delete(message)
                        return
                    message.attempts = attempts
                    message.ready_at_ms = now_ms + self.redelivery_delay_ms * attempts

    async def listen_queue(self, handler: QueueHandler) -> None:
        """
        Poll the queue until ``close`` is called.
        """
        while not self._closed.is_set():
            await self.deliver_due(handler)
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass


class InMemoryKvStore(SqlAlchemyKvStore):
    def __init__(self, **kwargs: Any):
        super().__init__("sqlite+aiosqlite:///:memory:", poolclass=StaticPool, **kwargs)

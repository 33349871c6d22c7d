"""Durable step ledger.

Every named unit of work in a run goes through `StepLedger.run`. The first
call executes the function and records its outcome; any later call with the
same (run_id, step_name), including one from a restarted process, returns the
recorded result or raises the recorded error without executing again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, Field
from vercel.cache import AsyncRuntimeCache

from fragment_agent.errors import (
    LedgerError,
    NotFoundError,
    NotReadyError,
    ProvisionError,
    SandboxError,
    StepFailedError,
    StorageError,
    WriteError,
)


logger = logging.getLogger("fragment_agent.ledger")

T = TypeVar("T")

# Recorded errors of these types are raised again as themselves on replay.
REPLAYABLE_ERRORS: dict[str, type[Exception]] = {
    cls.__name__: cls
    for cls in (
        SandboxError,
        ProvisionError,
        WriteError,
        NotFoundError,
        NotReadyError,
        LedgerError,
        StorageError,
    )
}


class StepError(BaseModel):
    type: str
    message: str


class StepRecord(BaseModel):
    run_id: str
    step_name: str
    result: Any = None
    error: StepError | None = None
    completed_at: float = Field(default_factory=time.time)


class LedgerStore(Protocol):
    async def get(self, run_id: str, step_name: str) -> StepRecord | None: ...

    async def put(self, record: StepRecord) -> None:
        """Persist a record. Must fail rather than overwrite an existing one."""
        ...

    async def delete(self, run_id: str, step_name: str) -> None: ...

    async def list(self, run_id: str) -> list[StepRecord]: ...


class InMemoryLedgerStore:
    def __init__(self) -> None:
        self._records: dict[tuple[str, str], StepRecord] = {}

    async def get(self, run_id: str, step_name: str) -> StepRecord | None:
        return self._records.get((run_id, step_name))

    async def put(self, record: StepRecord) -> None:
        key = (record.run_id, record.step_name)
        if key in self._records:
            raise LedgerError(f"Step already recorded: {record.run_id}/{record.step_name}")
        self._records[key] = record

    async def delete(self, run_id: str, step_name: str) -> None:
        self._records.pop((run_id, step_name), None)

    async def list(self, run_id: str) -> list[StepRecord]:
        return [r for (rid, _), r in self._records.items() if rid == run_id]


class SQLiteLedgerStore:
    """Ledger records in a SQLite file; the primary key makes each write a
    transactional check-and-insert."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._connection = sqlite3.connect(db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                payload TEXT NOT NULL,
                completed_at REAL NOT NULL,
                PRIMARY KEY (run_id, step_name)
            )
            """
        )
        self._connection.commit()

    def close(self) -> None:
        self._connection.close()

    async def get(self, run_id: str, step_name: str) -> StepRecord | None:
        row = self._connection.execute(
            "SELECT payload FROM step_records WHERE run_id = ? AND step_name = ?",
            (run_id, step_name),
        ).fetchone()
        if row is None:
            return None
        return StepRecord.model_validate_json(row["payload"])

    async def put(self, record: StepRecord) -> None:
        try:
            with self._connection:
                self._connection.execute(
                    "INSERT INTO step_records (run_id, step_name, payload, completed_at) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        record.run_id,
                        record.step_name,
                        record.model_dump_json(),
                        record.completed_at,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise LedgerError(
                f"Step already recorded: {record.run_id}/{record.step_name}"
            ) from e

    async def delete(self, run_id: str, step_name: str) -> None:
        with self._connection:
            self._connection.execute(
                "DELETE FROM step_records WHERE run_id = ? AND step_name = ?",
                (run_id, step_name),
            )

    async def list(self, run_id: str) -> list[StepRecord]:
        rows = self._connection.execute(
            "SELECT payload FROM step_records WHERE run_id = ? ORDER BY completed_at, rowid",
            (run_id,),
        ).fetchall()
        return [StepRecord.model_validate_json(r["payload"]) for r in rows]


class RuntimeCacheLedgerStore:
    """Ledger records in Vercel Runtime Cache, keyed per step and tagged per run.

    The cache has no atomic update, so writes from this process are serialized
    around the existence check and the read-modify-write of the run index.
    """

    def __init__(self, namespace: str, ttl_seconds: int) -> None:
        self.cache = AsyncRuntimeCache(namespace=namespace)
        self.ttl_seconds = ttl_seconds
        self._write_lock = asyncio.Lock()

    def _key(self, run_id: str, step_name: str) -> str:
        return f"step:{run_id}:{step_name}"

    def _index_key(self, run_id: str) -> str:
        return f"steps:{run_id}"

    def _options(self, run_id: str) -> dict[str, Any]:
        return {"ttl": self.ttl_seconds, "tags": [f"run:{run_id}"]}

    async def get(self, run_id: str, step_name: str) -> StepRecord | None:
        val = await self.cache.get(self._key(run_id, step_name))
        return StepRecord.model_validate(val) if isinstance(val, dict) else None

    async def put(self, record: StepRecord) -> None:
        key = self._key(record.run_id, record.step_name)
        async with self._write_lock:
            if await self.cache.get(key) is not None:
                raise LedgerError(f"Step already recorded: {record.run_id}/{record.step_name}")
            await self.cache.set(key, record.model_dump(mode="json"), self._options(record.run_id))
            index = await self.cache.get(self._index_key(record.run_id))
            names = list(index) if isinstance(index, list) else []
            names.append(record.step_name)
            await self.cache.set(self._index_key(record.run_id), names, self._options(record.run_id))

    async def delete(self, run_id: str, step_name: str) -> None:
        async with self._write_lock:
            await self.cache.delete(self._key(run_id, step_name))
            index = await self.cache.get(self._index_key(run_id))
            if isinstance(index, list) and step_name in index:
                await self.cache.set(
                    self._index_key(run_id),
                    [n for n in index if n != step_name],
                    self._options(run_id),
                )

    async def list(self, run_id: str) -> list[StepRecord]:
        index = await self.cache.get(self._index_key(run_id))
        records: list[StepRecord] = []
        for name in index if isinstance(index, list) else []:
            record = await self.get(run_id, name)
            if record is not None:
                records.append(record)
        return records


class _KeyLock:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


def replay_error(step_name: str, error: StepError) -> Exception:
    """Rebuild a recorded failure; unknown types become `StepFailedError`."""
    cls = REPLAYABLE_ERRORS.get(error.type)
    if cls is not None:
        return cls(error.message)
    return StepFailedError(step_name, error.type, error.message)


class StepLedger:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store
        self._locks: dict[tuple[str, str], _KeyLock] = {}

    @asynccontextmanager
    async def _key_lock(self, run_id: str, step_name: str) -> AsyncIterator[None]:
        """Hold the lock for one key; the entry is dropped when no one uses it."""
        key = (run_id, step_name)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    async def run(self, run_id: str, step_name: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._key_lock(run_id, step_name):
            try:
                existing = await self.store.get(run_id, step_name)
            except LedgerError:
                raise
            except Exception as e:
                raise LedgerError(f"Could not read step {run_id}/{step_name}: {e}") from e

            if existing is not None:
                logger.debug("step[%s] %s replayed", run_id, step_name)
                if existing.error is not None:
                    raise replay_error(step_name, existing.error)
                return existing.result

            try:
                result = await fn()
            except Exception as e:
                await self._record(
                    StepRecord(
                        run_id=run_id,
                        step_name=step_name,
                        error=StepError(type=type(e).__name__, message=str(e)),
                    )
                )
                logger.info("step[%s] %s failed: %s", run_id, step_name, e)
                raise

            recorded = await self._record(
                StepRecord(run_id=run_id, step_name=step_name, result=result)
            )
            logger.debug("step[%s] %s completed", run_id, step_name)
            # First execution and replay both hand back the JSON form.
            return recorded.result

    async def _record(self, record: StepRecord) -> StepRecord:
        try:
            normalized = StepRecord.model_validate(
                json.loads(json.dumps(record.model_dump(mode="json")))
            )
            await self.store.put(normalized)
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(
                f"Could not record step {record.run_id}/{record.step_name}: {e}"
            ) from e
        return normalized

    async def clear(self, run_id: str, step_name: str) -> None:
        """Forget a step so the next `run` executes it again."""
        async with self._key_lock(run_id, step_name):
            await self.store.delete(run_id, step_name)

    async def records(self, run_id: str) -> list[StepRecord]:
        return await self.store.list(run_id)

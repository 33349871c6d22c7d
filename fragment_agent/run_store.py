from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field
from vercel.cache import AsyncRuntimeCache

from fragment_agent.errors import StorageError


class Artifact(BaseModel):
    title: str
    files: dict[str, str]
    preview_url: str = ""


class RunOutcome(BaseModel):
    run_id: str
    project_id: str
    status: Literal["success", "error"]
    content: str
    artifact: Artifact | None = None
    created_at: float = Field(default_factory=time.time)


class StoredMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    project_id: str
    role: Literal["user", "assistant"]
    type: Literal["result", "error"] = "result"
    content: str
    run_id: str | None = None
    artifact: Artifact | None = None
    created_at: float = Field(default_factory=time.time)


def outcome_message(outcome: RunOutcome) -> StoredMessage:
    return StoredMessage(
        project_id=outcome.project_id,
        role="assistant",
        type="result" if outcome.status == "success" else "error",
        content=outcome.content,
        run_id=outcome.run_id,
        artifact=outcome.artifact,
        created_at=outcome.created_at,
    )


class RunStore(Protocol):
    async def append_message(self, message: StoredMessage) -> None: ...

    async def recent_messages(self, project_id: str, limit: int) -> list[StoredMessage]:
        """Most recent messages for a project, newest first."""
        ...

    async def save_outcome(self, outcome: RunOutcome) -> RunOutcome:
        """Persist the outcome once per run; a repeat returns the stored one."""
        ...

    async def get_outcome(self, run_id: str) -> RunOutcome | None: ...


class InMemoryRunStore:
    def __init__(self) -> None:
        self.messages: dict[str, list[StoredMessage]] = {}
        self.outcomes: dict[str, RunOutcome] = {}

    async def append_message(self, message: StoredMessage) -> None:
        self.messages.setdefault(message.project_id, []).append(message)

    async def recent_messages(self, project_id: str, limit: int) -> list[StoredMessage]:
        items = sorted(self.messages.get(project_id, []), key=lambda m: m.created_at, reverse=True)
        return items[:limit]

    async def save_outcome(self, outcome: RunOutcome) -> RunOutcome:
        existing = self.outcomes.get(outcome.run_id)
        if existing is not None:
            return existing
        self.outcomes[outcome.run_id] = outcome
        await self.append_message(outcome_message(outcome))
        return outcome

    async def get_outcome(self, run_id: str) -> RunOutcome | None:
        return self.outcomes.get(run_id)


class RuntimeCacheRunStore:
    """Messages and outcomes kept in Vercel Runtime Cache.

    A project's messages live in one list value, so appends from this process
    are serialized; the same goes for the outcome check-and-set.
    """

    def __init__(self, namespace: str, ttl_seconds: int) -> None:
        self.cache = AsyncRuntimeCache(namespace=namespace)
        self.ttl_seconds = ttl_seconds
        self._messages_lock = asyncio.Lock()
        self._outcome_lock = asyncio.Lock()

    def _messages_key(self, project_id: str) -> str:
        return f"messages:{project_id}"

    def _outcome_key(self, run_id: str) -> str:
        return f"outcome:{run_id}"

    def _options(self, tag: str) -> dict[str, Any]:
        return {"ttl": self.ttl_seconds, "tags": [tag]}

    async def append_message(self, message: StoredMessage) -> None:
        key = self._messages_key(message.project_id)
        async with self._messages_lock:
            try:
                current = await self.cache.get(key)
                items = list(current) if isinstance(current, list) else []
                items.append(message.model_dump(mode="json"))
                await self.cache.set(key, items, self._options(f"project:{message.project_id}"))
            except Exception as e:
                raise StorageError(
                    f"Could not append message for {message.project_id}: {e}"
                ) from e

    async def recent_messages(self, project_id: str, limit: int) -> list[StoredMessage]:
        try:
            current = await self.cache.get(self._messages_key(project_id))
        except Exception as e:
            raise StorageError(f"Could not read messages for {project_id}: {e}") from e
        items = [StoredMessage.model_validate(v) for v in current or [] if isinstance(v, dict)]
        items.sort(key=lambda m: m.created_at, reverse=True)
        return items[:limit]

    async def save_outcome(self, outcome: RunOutcome) -> RunOutcome:
        async with self._outcome_lock:
            existing = await self.get_outcome(outcome.run_id)
            if existing is not None:
                return existing
            try:
                await self.cache.set(
                    self._outcome_key(outcome.run_id),
                    outcome.model_dump(mode="json"),
                    self._options(f"run:{outcome.run_id}"),
                )
            except Exception as e:
                raise StorageError(f"Could not save outcome for {outcome.run_id}: {e}") from e
        await self.append_message(outcome_message(outcome))
        return outcome

    async def get_outcome(self, run_id: str) -> RunOutcome | None:
        try:
            val = await self.cache.get(self._outcome_key(run_id))
        except Exception as e:
            raise StorageError(f"Could not read outcome for {run_id}: {e}") from e
        return RunOutcome.model_validate(val) if isinstance(val, dict) else None

"""Live editing sessions and the peer notification channel."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator

from . import pubsub

# purpose: track who is editing which cell and push re-poll signals to peers
# inputs: websocket sessions, route notifications
# outputs: presence and sync events delivered to live sessions
# status: pilot

_logger = logging.getLogger(__name__)

PRESENCE_BACKEND = os.getenv("PRESENCE_BACKEND", "memory")
PRESENCE_KEEPALIVE_SECONDS = float(os.getenv("PRESENCE_KEEPALIVE_SECONDS", "30"))
# a matrix hash outlives a crashed process by at most this long
PRESENCE_TTL_SECONDS = int(os.getenv("PRESENCE_TTL_SECONDS", str(int(PRESENCE_KEEPALIVE_SECONDS * 3))))


@dataclass
class LiveSession:
    token: str
    matrix_id: int
    user_id: int
    connected_at: float
    last_sync_time: float
    editing_cell: tuple[int, int] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["editing_cell"] = list(self.editing_cell) if self.editing_cell else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LiveSession":
        cell = data.get("editing_cell")
        return cls(
            token=data["token"],
            matrix_id=int(data["matrix_id"]),
            user_id=int(data["user_id"]),
            connected_at=float(data["connected_at"]),
            last_sync_time=float(data["last_sync_time"]),
            editing_cell=tuple(cell) if cell else None,
        )


def editing_cells(sessions: list[LiveSession]) -> list[dict[str, int]]:
    return [
        {"user_id": session.user_id, "taxon_id": session.editing_cell[0], "character_id": session.editing_cell[1]}
        for session in sessions
        if session.editing_cell
    ]


def _addressed_to(event: dict[str, Any], session: LiveSession) -> bool:
    if event.get("exclude_token") == session.token:
        return False
    return event.get("exclude_user_id") is None or event.get("exclude_user_id") != session.user_id


class PresenceRegistry(ABC):
    """Sessions keyed by matrix id then session token."""

    @abstractmethod
    async def register(self, matrix_id: int, user_id: int) -> LiveSession: ...

    @abstractmethod
    async def lookup(self, matrix_id: int, token: str) -> LiveSession | None: ...

    @abstractmethod
    async def sessions(self, matrix_id: int) -> list[LiveSession]: ...

    @abstractmethod
    async def touch(self, matrix_id: int, token: str, last_sync_time: float) -> LiveSession | None: ...

    @abstractmethod
    async def set_editing_cell(self, matrix_id: int, token: str, cell: tuple[int, int] | None) -> LiveSession | None: ...

    @abstractmethod
    async def remove(self, matrix_id: int, token: str) -> None: ...

    async def refresh(self, matrix_id: int, token: str) -> None:
        """Keep a live session from expiring; called on every keepalive."""

    @abstractmethod
    async def broadcast(
        self,
        matrix_id: int,
        event: dict[str, Any],
        *,
        exclude_user_id: int | None = None,
        exclude_token: str | None = None,
    ) -> None: ...

    @abstractmethod
    def listen(self, session: LiveSession) -> AsyncIterator[dict[str, Any]]: ...

    def _new_session(self, matrix_id: int, user_id: int) -> LiveSession:
        now = time.time()
        return LiveSession(
            token=secrets.token_urlsafe(16),
            matrix_id=matrix_id,
            user_id=user_id,
            connected_at=now,
            last_sync_time=now,
        )


class InMemoryPresenceRegistry(PresenceRegistry):
    """Single-process registry; each session drains its own outbox queue."""

    def __init__(self) -> None:
        self._sessions: dict[int, dict[str, LiveSession]] = {}
        self._outboxes: dict[str, asyncio.Queue] = {}

    async def register(self, matrix_id: int, user_id: int) -> LiveSession:
        session = self._new_session(matrix_id, user_id)
        self._sessions.setdefault(matrix_id, {})[session.token] = session
        self._outboxes[session.token] = asyncio.Queue()
        return session

    async def lookup(self, matrix_id: int, token: str) -> LiveSession | None:
        return self._sessions.get(matrix_id, {}).get(token)

    async def sessions(self, matrix_id: int) -> list[LiveSession]:
        return list(self._sessions.get(matrix_id, {}).values())

    async def touch(self, matrix_id: int, token: str, last_sync_time: float) -> LiveSession | None:
        session = await self.lookup(matrix_id, token)
        if session is not None:
            session.last_sync_time = last_sync_time
        return session

    async def set_editing_cell(self, matrix_id: int, token: str, cell: tuple[int, int] | None) -> LiveSession | None:
        session = await self.lookup(matrix_id, token)
        if session is not None:
            session.editing_cell = cell
        return session

    async def remove(self, matrix_id: int, token: str) -> None:
        sessions = self._sessions.get(matrix_id, {})
        sessions.pop(token, None)
        if not sessions:
            self._sessions.pop(matrix_id, None)
        self._outboxes.pop(token, None)

    async def broadcast(
        self,
        matrix_id: int,
        event: dict[str, Any],
        *,
        exclude_user_id: int | None = None,
        exclude_token: str | None = None,
    ) -> None:
        routed = {**event, "exclude_user_id": exclude_user_id, "exclude_token": exclude_token}
        for session in list(self._sessions.get(matrix_id, {}).values()):
            outbox = self._outboxes.get(session.token)
            if outbox is not None and _addressed_to(routed, session):
                outbox.put_nowait(event)

    async def listen(self, session: LiveSession) -> AsyncIterator[dict[str, Any]]:
        outbox = self._outboxes.get(session.token)
        if outbox is None:
            return
        while session.token in self._outboxes:
            yield await outbox.get()


class RedisPresenceRegistry(PresenceRegistry):
    """Registry shared through a Redis hash per matrix plus a pub/sub channel."""

    def _key(self, matrix_id: int) -> str:
        return f"presence:{matrix_id}"

    async def _save(self, session: LiveSession) -> None:
        r = await pubsub.get_redis()
        await r.hset(self._key(session.matrix_id), session.token, json.dumps(session.to_dict()))
        await r.expire(self._key(session.matrix_id), PRESENCE_TTL_SECONDS)

    async def register(self, matrix_id: int, user_id: int) -> LiveSession:
        session = self._new_session(matrix_id, user_id)
        await self._save(session)
        return session

    async def lookup(self, matrix_id: int, token: str) -> LiveSession | None:
        r = await pubsub.get_redis()
        raw = await r.hget(self._key(matrix_id), token)
        if raw is None:
            return None
        return LiveSession.from_dict(json.loads(raw))

    async def sessions(self, matrix_id: int) -> list[LiveSession]:
        r = await pubsub.get_redis()
        entries = await r.hgetall(self._key(matrix_id))
        return [LiveSession.from_dict(json.loads(raw)) for raw in entries.values()]

    async def touch(self, matrix_id: int, token: str, last_sync_time: float) -> LiveSession | None:
        session = await self.lookup(matrix_id, token)
        if session is not None:
            session.last_sync_time = last_sync_time
            await self._save(session)
        return session

    async def set_editing_cell(self, matrix_id: int, token: str, cell: tuple[int, int] | None) -> LiveSession | None:
        session = await self.lookup(matrix_id, token)
        if session is not None:
            session.editing_cell = cell
            await self._save(session)
        return session

    async def remove(self, matrix_id: int, token: str) -> None:
        r = await pubsub.get_redis()
        await r.hdel(self._key(matrix_id), token)

    async def refresh(self, matrix_id: int, token: str) -> None:
        r = await pubsub.get_redis()
        if await r.hexists(self._key(matrix_id), token):
            await r.expire(self._key(matrix_id), PRESENCE_TTL_SECONDS)

    async def broadcast(
        self,
        matrix_id: int,
        event: dict[str, Any],
        *,
        exclude_user_id: int | None = None,
        exclude_token: str | None = None,
    ) -> None:
        await pubsub.publish_matrix_event(
            matrix_id,
            {"event": event, "exclude_user_id": exclude_user_id, "exclude_token": exclude_token},
        )

    async def listen(self, session: LiveSession) -> AsyncIterator[dict[str, Any]]:
        async for envelope in pubsub.iter_matrix_events(session.matrix_id):
            if _addressed_to(envelope, session):
                yield envelope["event"]


_registry: PresenceRegistry | None = None


def get_registry() -> PresenceRegistry:
    global _registry
    if _registry is None:
        if PRESENCE_BACKEND == "redis":
            _registry = RedisPresenceRegistry()
        else:
            _registry = InMemoryPresenceRegistry()
        _logger.info("presence registry backend: %s", type(_registry).__name__)
    return _registry


async def notify_peers(matrix_id: int, actor_id: int) -> None:
    """Ask every other live session on the matrix to poll for changes."""

    await get_registry().broadcast(matrix_id, {"type": "sync", "user_id": actor_id}, exclude_user_id=actor_id)

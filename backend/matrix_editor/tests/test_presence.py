import asyncio

from matrix_editor import presence, pubsub


def test_in_memory_registry_tracks_sessions_and_editing_cells():
    async def scenario():
        registry = presence.InMemoryPresenceRegistry()
        first = await registry.register(7, user_id=1)
        second = await registry.register(7, user_id=2)
        await registry.register(8, user_id=3)

        assert first.token != second.token
        assert {session.user_id for session in await registry.sessions(7)} == {1, 2}

        await registry.set_editing_cell(7, second.token, (11, 21))
        assert presence.editing_cells(await registry.sessions(7)) == [
            {"user_id": 2, "taxon_id": 11, "character_id": 21}
        ]
        await registry.set_editing_cell(7, second.token, None)
        assert presence.editing_cells(await registry.sessions(7)) == []

        touched = await registry.touch(7, first.token, 1234.5)
        assert touched.last_sync_time == 1234.5
        assert await registry.touch(7, "missing", 1.0) is None

        await registry.remove(7, first.token)
        assert await registry.lookup(7, first.token) is None
        assert [session.user_id for session in await registry.sessions(7)] == [2]

    asyncio.run(scenario())


def test_broadcast_skips_excluded_user_and_token():
    async def scenario():
        registry = presence.InMemoryPresenceRegistry()
        actor = await registry.register(5, user_id=1)
        actor_other_tab = await registry.register(5, user_id=1)
        peer = await registry.register(5, user_id=2)

        await registry.broadcast(5, {"type": "sync", "user_id": 1}, exclude_user_id=1)
        peer_events = registry.listen(peer)
        assert await anext(peer_events) == {"type": "sync", "user_id": 1}

        await registry.broadcast(5, {"type": "EDIT_CELLS", "cells": []}, exclude_token=actor.token)
        assert await anext(peer_events) == {"type": "EDIT_CELLS", "cells": []}
        assert await anext(registry.listen(actor_other_tab)) == {"type": "EDIT_CELLS", "cells": []}
        assert registry._outboxes[actor.token].empty()

    asyncio.run(scenario())


def test_notify_peers_uses_default_registry():
    async def scenario():
        registry = presence.get_registry()
        assert isinstance(registry, presence.InMemoryPresenceRegistry)
        actor = await registry.register(3, user_id=10)
        peer = await registry.register(3, user_id=11)

        await presence.notify_peers(3, 10)
        assert await anext(registry.listen(peer)) == {"type": "sync", "user_id": 10}
        assert registry._outboxes[actor.token].empty()

    asyncio.run(scenario())


def test_redis_registry_round_trips_sessions(monkeypatch):
    monkeypatch.setattr(pubsub, "_redis", None)

    async def scenario():
        registry = presence.RedisPresenceRegistry()
        session = await registry.register(9, user_id=4)
        await registry.set_editing_cell(9, session.token, (1, 2))
        await registry.touch(9, session.token, 99.0)

        stored = await registry.lookup(9, session.token)
        assert stored.user_id == 4
        assert stored.editing_cell == (1, 2)
        assert stored.last_sync_time == 99.0
        assert presence.editing_cells(await registry.sessions(9)) == [{"user_id": 4, "taxon_id": 1, "character_id": 2}]

        await registry.remove(9, session.token)
        assert await registry.sessions(9) == []

    asyncio.run(scenario())
    monkeypatch.setattr(pubsub, "_redis", None)


def test_live_session_serialization():
    session = presence.LiveSession(
        token="abc", matrix_id=1, user_id=2, connected_at=1.0, last_sync_time=2.0, editing_cell=(3, 4)
    )
    data = session.to_dict()
    assert data["editing_cell"] == [3, 4]
    assert presence.LiveSession.from_dict(data) == session


def test_redis_registry_expires_abandoned_matrices(monkeypatch):
    monkeypatch.setattr(pubsub, "_redis", None)
    monkeypatch.setattr(presence, "PRESENCE_TTL_SECONDS", 90)

    async def scenario():
        registry = presence.RedisPresenceRegistry()
        r = await pubsub.get_redis()
        session = await registry.register(12, user_id=6)
        assert 0 < await r.ttl("presence:12") <= 90

        await r.expire("presence:12", 5)
        await registry.refresh(12, session.token)
        assert await r.ttl("presence:12") > 5

        await registry.remove(12, session.token)
        await registry.refresh(12, session.token)
        assert await r.exists("presence:12") == 0

    asyncio.run(scenario())
    monkeypatch.setattr(pubsub, "_redis", None)

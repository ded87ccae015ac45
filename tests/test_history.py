"""Tests for the ephemeral conversation history."""

from unittest.mock import AsyncMock

import pytest

from chatgate.gateway.errors import InternalDegradedError
from chatgate.gateway.history import HistoryStore
from chatgate.gateway.types import Message, Role


class FakeDurableStore:
    """In-memory stand-in for the persistent conversation store."""

    def __init__(self, sessions: dict[tuple[str, str], list[Message]] | None = None):
        self.sessions = sessions or {}
        self.calls: list[tuple[str, str, int]] = []

    async def load_recent(self, user_id: str, session_id: str, limit: int) -> list[Message]:
        self.calls.append((user_id, session_id, limit))
        return self.sessions.get((user_id, session_id), [])[-limit:]


@pytest.fixture
def history(store) -> HistoryStore:
    return HistoryStore(store, ttl_seconds=86_400, max_messages=200)


class TestHistoryOrdering:
    @pytest.mark.asyncio
    async def test_append_then_recent_in_order(self, history):
        for i in range(6):
            role = Role.USER if i % 2 == 0 else Role.ASSISTANT
            await history.append("u1", "s1", Message.create(role, f"message {i}"))

        recent = await history.recent("u1", "s1", 4)
        assert [m.content for m in recent] == ["message 2", "message 3", "message 4", "message 5"]

    @pytest.mark.asyncio
    async def test_unknown_session_is_empty(self, history):
        assert await history.recent("u1", "nope", 10) == []

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, history):
        await history.append("u1", "s1", Message.create(Role.USER, "in s1"))
        await history.append("u2", "s1", Message.create(Role.USER, "other user"))

        assert [m.content for m in await history.recent("u1", "s1", 10)] == ["in s1"]
        assert await history.recent("u1", "s2", 10) == []

    @pytest.mark.asyncio
    async def test_duplicate_appends_are_kept(self, history):
        msg = Message.create(Role.USER, "same text")
        await history.append("u1", "s1", msg)
        await history.append("u1", "s1", msg)
        assert len(await history.recent("u1", "s1", 10)) == 2

    @pytest.mark.asyncio
    async def test_roundtrip_preserves_fields(self, history):
        msg = Message.create(Role.ASSISTANT, "answer")
        await history.append("u1", "s1", msg)
        (loaded,) = await history.recent("u1", "s1", 1)
        assert loaded == msg


class TestRetention:
    @pytest.mark.asyncio
    async def test_count_cap(self, store):
        history = HistoryStore(store, max_messages=3)
        for i in range(5):
            await history.append("u1", "s1", Message.create(Role.USER, str(i)))

        assert [m.content for m in await history.recent("u1", "s1", 10)] == ["2", "3", "4"]

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, store, clock):
        history = HistoryStore(store, ttl_seconds=100)
        await history.append("u1", "s1", Message.create(Role.USER, "hi"))

        clock.advance(101)
        assert await history.recent("u1", "s1", 10) == []

    @pytest.mark.asyncio
    async def test_append_refreshes_ttl(self, store, clock):
        history = HistoryStore(store, ttl_seconds=100)
        await history.append("u1", "s1", Message.create(Role.USER, "first"))
        clock.advance(80)
        await history.append("u1", "s1", Message.create(Role.USER, "second"))
        clock.advance(80)

        assert len(await history.recent("u1", "s1", 10)) == 2

    @pytest.mark.asyncio
    async def test_clear(self, history):
        await history.append("u1", "s1", Message.create(Role.USER, "hi"))
        assert await history.clear("u1", "s1") is True
        assert await history.recent("u1", "s1", 10) == []
        assert await history.clear("u1", "s1") is False

    @pytest.mark.asyncio
    async def test_stats(self, history):
        await history.append("u1", "s1", Message.create(Role.USER, "a" * 40))
        await history.append("u1", "s1", Message.create(Role.ASSISTANT, "b" * 20))

        stats = await history.stats("u1", "s1")
        assert stats["message_count"] == 2
        assert stats["approx_tokens"] == 15
        assert stats["first_message_at"] is not None


class TestDurableFallback:
    @pytest.mark.asyncio
    async def test_miss_loads_and_warms(self, store):
        durable = FakeDurableStore(
            {("u1", "s1"): [Message.create(Role.USER, "old q"), Message.create(Role.ASSISTANT, "old a")]}
        )
        history = HistoryStore(store, durable=durable)

        first = await history.recent("u1", "s1", 10)
        assert [m.content for m in first] == ["old q", "old a"]

        # Served from the warmed log, no second durable read
        second = await history.recent("u1", "s1", 10)
        assert [m.content for m in second] == ["old q", "old a"]
        assert len(durable.calls) == 1

    @pytest.mark.asyncio
    async def test_durable_failure_degrades_to_empty(self, store):
        durable = AsyncMock()
        durable.load_recent.side_effect = ConnectionError("db down")
        history = HistoryStore(store, durable=durable)

        assert await history.recent("u1", "s1", 10) == []

    @pytest.mark.asyncio
    async def test_cleared_session_stays_cleared(self, store):
        durable = FakeDurableStore(
            {("u1", "s1"): [Message.create(Role.USER, "old q"), Message.create(Role.ASSISTANT, "old a")]}
        )
        history = HistoryStore(store, durable=durable, ttl_seconds=100)
        assert len(await history.recent("u1", "s1", 10)) == 2

        assert await history.clear("u1", "s1") is True

        assert await history.recent("u1", "s1", 10) == []
        assert (await history.stats("u1", "s1"))["message_count"] == 0
        assert len(durable.calls) == 1

    @pytest.mark.asyncio
    async def test_new_messages_after_clear(self, store):
        durable = FakeDurableStore({("u1", "s1"): [Message.create(Role.USER, "old q")]})
        history = HistoryStore(store, durable=durable)
        await history.recent("u1", "s1", 10)
        await history.clear("u1", "s1")

        await history.append("u1", "s1", Message.create(Role.USER, "fresh"))

        assert [m.content for m in await history.recent("u1", "s1", 10)] == ["fresh"]

    @pytest.mark.asyncio
    async def test_clear_tombstone_expires_with_history_ttl(self, store, clock):
        durable = FakeDurableStore({("u1", "s1"): [Message.create(Role.USER, "old q")]})
        history = HistoryStore(store, durable=durable, ttl_seconds=100)
        await history.clear("u1", "s1")

        clock.advance(101)

        assert [m.content for m in await history.recent("u1", "s1", 10)] == ["old q"]

    @pytest.mark.asyncio
    async def test_durable_not_consulted_when_log_present(self, store):
        durable = FakeDurableStore({("u1", "s1"): [Message.create(Role.USER, "durable")]})
        history = HistoryStore(store, durable=durable)
        await history.append("u1", "s1", Message.create(Role.USER, "ephemeral"))

        assert [m.content for m in await history.recent("u1", "s1", 10)] == ["ephemeral"]
        assert durable.calls == []


class TestDegradedStore:
    @pytest.mark.asyncio
    async def test_read_degrades_to_empty(self, store):
        store.list_tail = AsyncMock(side_effect=InternalDegradedError("down"))
        history = HistoryStore(store)
        assert await history.recent("u1", "s1", 10) == []

    @pytest.mark.asyncio
    async def test_append_does_not_raise(self, store):
        store.list_push = AsyncMock(side_effect=InternalDegradedError("down"))
        history = HistoryStore(store)
        await history.append("u1", "s1", Message.create(Role.USER, "hi"))

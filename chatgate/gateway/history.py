"""Ephemeral conversation history per (user, session).

An append-only, TTL'd message log in the shared store. Reads fall back to
the durable conversation store (an external collaborator) when the log is
missing, and warm the log with what it returns.

Store outages degrade to an empty history: the conversation continues
with a colder context instead of failing the turn.
"""

from __future__ import annotations

import json
import logging
from typing import Protocol

from chatgate.core.metrics import DEGRADED_EVENTS
from chatgate.gateway.errors import InternalDegradedError
from chatgate.gateway.store import KeyValueStore
from chatgate.gateway.types import Message

logger = logging.getLogger(__name__)


class DurableConversationStore(Protocol):
    """Interface of the persistent message store owned by another service."""

    async def load_recent(self, user_id: str, session_id: str, limit: int) -> list[Message]: ...


class HistoryStore:
    """TTL'd, count-capped message log keyed by (user_id, session_id)."""

    def __init__(
        self,
        store: KeyValueStore,
        durable: DurableConversationStore | None = None,
        ttl_seconds: int = 86_400,
        max_messages: int = 200,
    ):
        self._store = store
        self._durable = durable
        self.ttl_seconds = ttl_seconds
        self.max_messages = max_messages

    @staticmethod
    def _key(user_id: str, session_id: str) -> str:
        return f"history:{user_id}:{session_id}"

    @staticmethod
    def _cleared_key(user_id: str, session_id: str) -> str:
        return f"history:cleared:{user_id}:{session_id}"

    @staticmethod
    def _encode(message: Message) -> str:
        return json.dumps(message.to_dict(), ensure_ascii=False)

    async def append(self, user_id: str, session_id: str, message: Message) -> None:
        """Append one message and refresh the session's TTL.

        Every call adds a distinct entry; a double-submitted turn shows up as
        duplicate lines rather than being merged.
        """
        try:
            await self._store.list_push(
                self._key(user_id, session_id),
                [self._encode(message)],
                ttl_seconds=self.ttl_seconds,
                max_len=self.max_messages,
            )
        except InternalDegradedError as e:
            DEGRADED_EVENTS.labels(component="history").inc()
            logger.warning("History append skipped for %s/%s: %s", user_id, session_id, e)

    async def recent(self, user_id: str, session_id: str, limit: int) -> list[Message]:
        """Most recent ``limit`` messages, oldest first. Unknown session → []."""
        if limit <= 0:
            return []

        try:
            raw = await self._store.list_tail(self._key(user_id, session_id), limit)
        except InternalDegradedError as e:
            DEGRADED_EVENTS.labels(component="history").inc()
            logger.warning("History unavailable for %s/%s, continuing without context: %s", user_id, session_id, e)
            return []

        if raw:
            return self._decode_all(raw)

        return await self._load_durable(user_id, session_id, limit)

    async def clear(self, user_id: str, session_id: str) -> bool:
        """Delete the session's log. Returns True if one existed.

        Leaves a tombstone for one history TTL so the durable fallback does
        not bring the cleared conversation back.
        """
        try:
            deleted = await self._store.delete(self._key(user_id, session_id))
            await self._store.set(self._cleared_key(user_id, session_id), "1", ttl_seconds=self.ttl_seconds)
        except InternalDegradedError as e:
            DEGRADED_EVENTS.labels(component="history").inc()
            logger.warning("History clear failed for %s/%s: %s", user_id, session_id, e)
            return False
        logger.info("History cleared for %s/%s (existed=%s)", user_id, session_id, deleted)
        return deleted

    async def stats(self, user_id: str, session_id: str) -> dict:
        """Message count and estimated tokens of the retained log."""
        messages = await self.recent(user_id, session_id, self.max_messages)
        return {
            "message_count": len(messages),
            "approx_tokens": sum(m.approx_tokens for m in messages),
            "first_message_at": messages[0].created_at.isoformat() if messages else None,
            "last_message_at": messages[-1].created_at.isoformat() if messages else None,
        }

    def _decode_all(self, raw: list[str]) -> list[Message]:
        messages: list[Message] = []
        for item in raw:
            try:
                messages.append(Message.from_dict(json.loads(item)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable history entry: %s", e)
        return messages

    async def _load_durable(self, user_id: str, session_id: str, limit: int) -> list[Message]:
        """Miss path: read the durable store and warm the ephemeral log."""
        if self._durable is None:
            return []

        try:
            if await self._store.exists(self._cleared_key(user_id, session_id)):
                return []
        except InternalDegradedError as e:
            DEGRADED_EVENTS.labels(component="history").inc()
            logger.warning("History tombstone check failed for %s/%s: %s", user_id, session_id, e)
            return []

        try:
            messages = list(await self._durable.load_recent(user_id, session_id, limit))
        except Exception as e:
            logger.warning("Durable history load failed for %s/%s: %s", user_id, session_id, e)
            return []

        if not messages:
            return []

        try:
            await self._store.list_push(
                self._key(user_id, session_id),
                [self._encode(m) for m in messages],
                ttl_seconds=self.ttl_seconds,
                max_len=self.max_messages,
            )
        except InternalDegradedError as e:
            DEGRADED_EVENTS.labels(component="history").inc()
            logger.warning("History warm-up skipped for %s/%s: %s", user_id, session_id, e)

        logger.debug("Loaded %d messages from durable store for %s/%s", len(messages), user_id, session_id)
        return messages[-limit:]

"""Per-conversation short-term memory of the last entity mentioned per kind."""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone

from plannerai.core.types import ConversationContext, EntityKind, EntityRef


class ContextTracker:
    """Holds one ``ConversationContext`` per (user, conversation).

    Keys include the user id, so a conversation id reused by a different
    user starts from an empty context.  The map itself is guarded by a
    plain lock; ``turn_lock`` hands out a per-conversation asyncio lock the
    dispatcher holds while a tool call runs, so concurrent messages for the
    same conversation apply their mentions in order.
    """

    def __init__(self) -> None:
        self._contexts: dict[tuple[str, str], ConversationContext] = {}
        self._turn_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock = threading.Lock()

    def _entry(self, user_id: str, conversation_id: str) -> ConversationContext:
        key = (user_id, conversation_id)
        ctx = self._contexts.get(key)
        if ctx is None:
            ctx = ConversationContext(conversation_id=conversation_id, user_id=user_id)
            self._contexts[key] = ctx
        return ctx

    def get(self, user_id: str, conversation_id: str) -> ConversationContext:
        """Return a snapshot; creates an empty context on first access."""
        with self._lock:
            return self._entry(user_id, conversation_id).snapshot()

    def record_mention(self, user_id: str, conversation_id: str, ref: EntityRef) -> None:
        if not conversation_id:
            return
        with self._lock:
            ctx = self._entry(user_id, conversation_id)
            ctx.last_mentioned[ref.kind] = ref
            deleted = ctx.last_deleted.get(ref.kind)
            if deleted is not None and deleted.id == ref.id:
                del ctx.last_deleted[ref.kind]
            ctx.updated_at = datetime.now(timezone.utc)

    def record_deletion(self, user_id: str, conversation_id: str, ref: EntityRef) -> None:
        """Move a soft-deleted entity from the live slot to the trashed one."""
        if not conversation_id:
            return
        with self._lock:
            ctx = self._entry(user_id, conversation_id)
            current = ctx.last_mentioned.get(ref.kind)
            if current is not None and current.id == ref.id:
                del ctx.last_mentioned[ref.kind]
            ctx.last_deleted[ref.kind] = ref
            ctx.updated_at = datetime.now(timezone.utc)

    def resolve_pronoun(
        self, user_id: str, conversation_id: str, kind: EntityKind, *, trashed: bool = False
    ) -> EntityRef | None:
        with self._lock:
            ctx = self._contexts.get((user_id, conversation_id))
            if ctx is None:
                return None
            if trashed:
                return ctx.last_deleted.get(kind)
            return ctx.last_mentioned.get(kind)

    def forget_entity(self, user_id: str, conversation_id: str, kind: EntityKind, entity_id: str) -> None:
        with self._lock:
            ctx = self._contexts.get((user_id, conversation_id))
            if ctx is None:
                return
            for slot in (ctx.last_mentioned, ctx.last_deleted):
                ref = slot.get(kind)
                if ref is not None and ref.id == entity_id:
                    del slot[kind]

    def forget(self, user_id: str, conversation_id: str) -> None:
        """Drop a conversation's memory (conversation ended or expired)."""
        with self._lock:
            self._contexts.pop((user_id, conversation_id), None)
            self._turn_locks.pop((user_id, conversation_id), None)

    def turn_lock(self, user_id: str, conversation_id: str) -> asyncio.Lock:
        with self._lock:
            key = (user_id, conversation_id)
            lock = self._turn_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._turn_locks[key] = lock
            return lock

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

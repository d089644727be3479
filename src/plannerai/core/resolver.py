"""Entity resolver: turn a loose identifier into exactly one owned record.

Order of attempts:

1. A canonical UUID is looked up by id. A miss is final; there is no
   fuzzy fallback for ids.
2. Pronoun-like identifiers ("it", "that project", "") come from the
   conversation context, and the remembered record must still exist.
3. Exact case-insensitive title match wins when it is unique.
4. Case-insensitive substring match: none is NotFound, one wins, several
   is an AmbiguousMatch listing up to ``max_candidates`` candidates.

Every successful resolution is recorded as the latest mention of its kind.
"""

from __future__ import annotations

import re

from plannerai.core.ai_logger import AiLogger
from plannerai.core.context_tracker import ContextTracker
from plannerai.core.exceptions import AmbiguousMatchError, NotFoundError
from plannerai.core.repository import EntityRepository
from plannerai.core.types import (
    AmbiguousMatch,
    Candidate,
    EntityKind,
    EntityRef,
    NotFound,
    ResolveOutcome,
)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

_PRONOUNS = frozenset({
    "", "it", "this", "that", "this one", "that one",
    "the last one", "the same one", "same one",
})
_KIND_PREFIXES = ("the", "this", "that", "last", "same", "the last", "the same", "that same")


def is_uuid(identifier: str) -> bool:
    return bool(UUID_RE.match(identifier.strip()))


def is_pronoun(identifier: str, kind: EntityKind) -> bool:
    text = " ".join(identifier.lower().split())
    if text in _PRONOUNS:
        return True
    return any(text == f"{prefix} {kind.value}" for prefix in _KIND_PREFIXES)


def distinguishing_field(kind: EntityKind, record: dict) -> str:
    if kind is EntityKind.TASK:
        text = f"status: {record.get('status')}"
        if record.get("dueDate"):
            text += f", due: {record['dueDate'][:10]}"
        return text
    if kind is EntityKind.EVENT:
        return f"starts: {(record.get('startTime') or '')[:16].replace('T', ' ')}"
    if kind is EntityKind.NOTE:
        return f"type: {record.get('type')}, updated: {(record.get('updatedAt') or '')[:10]}"
    return f"status: {record.get('status')}"


def to_ref(kind: EntityKind, record: dict) -> EntityRef:
    return EntityRef(kind=kind, id=record["id"], display_name=record["title"])


class EntityResolver:
    """Resolves identifiers for one kind at a time against the repository."""

    def __init__(
        self,
        repository: EntityRepository,
        tracker: ContextTracker,
        ai_logger: AiLogger | None = None,
        *,
        max_candidates: int = 5,
    ) -> None:
        self._repo = repository
        self._tracker = tracker
        self._log = ai_logger or AiLogger(enabled=False)
        self._max_candidates = max_candidates

    async def resolve(
        self,
        identifier: str,
        kind: EntityKind,
        user_id: str,
        conversation_id: str,
        *,
        trashed: bool = False,
        ai_log: AiLogger | None = None,
    ) -> ResolveOutcome:
        """Resolve ``identifier`` to an ``EntityRef`` or explain why not.

        Args:
            identifier: UUID, title/name fragment, or pronoun.
            kind: Entity kind the identifier refers to.
            user_id: Owner; records of other users are never visible.
            conversation_id: Conversation whose context backs pronouns.
            trashed: Resolve among soft-deleted records instead of live ones.
            ai_log: Dispatch-bound trace logger (defaults to the resolver's).

        Returns:
            EntityRef, AmbiguousMatch or NotFound.
        """
        log = ai_log or self._log
        store = self._repo.store(kind)
        text = identifier.strip()
        scope = "trash" if trashed else "live"

        if is_uuid(text):
            record = await store.find_by_id(user_id, text, trashed=trashed)
            log.log_query(kind.value, {"id": text, "scope": scope}, int(record is not None), "find_by_id")
            if record is None:
                return self._not_found(log, kind, identifier, f"No {kind.value} exists with id {text}.")
            return self._found(log, kind, record, user_id, conversation_id, "id", record_mention=not trashed)

        if is_pronoun(text, kind):
            done = "deleted" if trashed else "mentioned"
            ref = self._tracker.resolve_pronoun(user_id, conversation_id, kind, trashed=trashed)
            if ref is None:
                return self._not_found(
                    log,
                    kind,
                    identifier,
                    f"No {kind.value} has been {done} in this conversation yet; "
                    f"ask the user which {kind.value} they mean.",
                )
            record = await store.find_by_id(user_id, ref.id, trashed=trashed)
            log.log_query(kind.value, {"id": ref.id, "scope": scope}, int(record is not None), "find_by_id")
            if record is None:
                self._tracker.forget_entity(user_id, conversation_id, kind, ref.id)
                return self._not_found(
                    log,
                    kind,
                    identifier,
                    f"The last {done} {kind.value} ('{ref.display_name}') "
                    f"{'is no longer in the trash' if trashed else 'no longer exists'}.",
                )
            return self._found(log, kind, record, user_id, conversation_id, "context", record_mention=not trashed)

        exact = await store.find_by_title(user_id, text, trashed=trashed)
        log.log_query(kind.value, {"title": text, "match": "exact", "scope": scope}, len(exact), "find_by_title")
        if len(exact) == 1:
            return self._found(log, kind, exact[0], user_id, conversation_id, "exact_title", record_mention=not trashed)

        partial = await store.find_by_title_substring(
            user_id, text, limit=self._max_candidates, trashed=trashed
        )
        log.log_query(kind.value, {"title": text, "match": "substring", "scope": scope}, len(partial), "find_by_title")
        if not partial:
            return self._not_found(
                log,
                kind,
                identifier,
                f"No {kind.value} title contains '{text}'. Try query_entities to list them.",
            )
        if len(partial) == 1:
            return self._found(log, kind, partial[0], user_id, conversation_id, "substring", record_mention=not trashed)

        candidates = tuple(
            Candidate(id=r["id"], title=r["title"], distinguishing_field=distinguishing_field(kind, r))
            for r in partial[: self._max_candidates]
        )
        log.debug(
            f"Ambiguous {kind.value} reference",
            {"identifier": identifier, "kind": kind.value, "candidateCount": len(candidates)},
        )
        return AmbiguousMatch(kind=kind, identifier=identifier, candidates=candidates)

    async def require(
        self,
        identifier: str,
        kind: EntityKind,
        user_id: str,
        conversation_id: str,
        *,
        trashed: bool = False,
        ai_log: AiLogger | None = None,
    ) -> EntityRef:
        """Like ``resolve`` but raises for anything other than a single match."""
        outcome = await self.resolve(
            identifier, kind, user_id, conversation_id, trashed=trashed, ai_log=ai_log
        )
        if isinstance(outcome, EntityRef):
            return outcome
        if isinstance(outcome, AmbiguousMatch):
            raise AmbiguousMatchError(
                f"Found {len(outcome.candidates)} {kind.value}s matching "
                f"'{outcome.identifier}'. Ask the user which one they mean.",
                candidates=[c.to_dict() for c in outcome.candidates],
            )
        raise NotFoundError(
            f"No {kind.value} found matching '{outcome.identifier}'",
            hint=outcome.hint,
        )

    def _found(
        self,
        log: AiLogger,
        kind: EntityKind,
        record: dict,
        user_id: str,
        conversation_id: str,
        via: str,
        *,
        record_mention: bool,
    ) -> EntityRef:
        ref = to_ref(kind, record)
        if record_mention:
            self._tracker.record_mention(user_id, conversation_id, ref)
        log.debug(
            f"Resolved {kind.value} reference",
            {"kind": kind.value, "entityId": ref.id, "displayName": ref.display_name, "via": via},
        )
        return ref

    def _not_found(self, log: AiLogger, kind: EntityKind, identifier: str, hint: str) -> NotFound:
        log.debug(
            f"No {kind.value} matched reference",
            {"identifier": identifier, "kind": kind.value},
        )
        return NotFound(kind=kind, identifier=identifier, hint=hint)

"""Tests for EntityResolver: ids, titles, ambiguity and pronouns."""

from __future__ import annotations

import uuid
from datetime import datetime

import pytest

from plannerai.core.ai_logger import AiLogger
from plannerai.core.exceptions import AmbiguousMatchError, NotFoundError
from plannerai.core.resolver import EntityResolver, is_pronoun, is_uuid
from plannerai.core.types import AmbiguousMatch, EntityKind, EntityRef, NotFound

USER = "user-1"
OTHER_USER = "user-2"
CONV = "conv-1"


@pytest.fixture
def resolver(repository, tracker):
    return EntityResolver(repository, tracker, AiLogger(enabled=False), max_candidates=5)


def test_is_uuid():
    assert is_uuid(str(uuid.uuid4()))
    assert is_uuid(str(uuid.uuid4()).upper())
    assert not is_uuid("Test")
    assert not is_uuid("1234")


@pytest.mark.parametrize("text", ["it", "  It ", "that", "this one", "", "the task", "that task"])
def test_pronouns_for_task(text):
    assert is_pronoun(text, EntityKind.TASK)


def test_kind_phrase_must_match_kind():
    assert not is_pronoun("the project", EntityKind.TASK)
    assert not is_pronoun("Quarterly report", EntityKind.TASK)


@pytest.mark.asyncio
async def test_uuid_miss_does_not_fall_back(resolver, repository):
    missing = str(uuid.uuid4())
    # A title containing the uuid text must not be matched
    await repository.tasks.create(USER, {"title": f"Follow up {missing}"})
    outcome = await resolver.resolve(missing, EntityKind.TASK, USER, CONV)
    assert isinstance(outcome, NotFound)


@pytest.mark.asyncio
async def test_uuid_hit(resolver, repository, tracker):
    record = await repository.tasks.create(USER, {"title": "Write report"})
    outcome = await resolver.resolve(record["id"], EntityKind.TASK, USER, CONV)
    assert outcome == EntityRef(EntityKind.TASK, record["id"], "Write report")
    assert tracker.resolve_pronoun(USER, CONV, EntityKind.TASK) == outcome


@pytest.mark.asyncio
async def test_exact_title_updates_context(resolver, repository, tracker):
    record = await repository.tasks.create(USER, {"title": "Write report"})
    await repository.tasks.create(USER, {"title": "Write report appendix"})

    outcome = await resolver.resolve("write REPORT", EntityKind.TASK, USER, CONV)

    assert isinstance(outcome, EntityRef)
    assert outcome.id == record["id"]
    assert tracker.get(USER, CONV).last_mentioned[EntityKind.TASK].id == record["id"]


@pytest.mark.asyncio
async def test_same_title_is_ambiguous_by_status(resolver, repository, tracker):
    await repository.tasks.create(USER, {"title": "Test", "status": "todo"})
    await repository.tasks.create(USER, {"title": "Test", "status": "done"})

    outcome = await resolver.resolve("Test", EntityKind.TASK, USER, CONV)

    assert isinstance(outcome, AmbiguousMatch)
    assert len(outcome.candidates) == 2
    fields = sorted(c.distinguishing_field for c in outcome.candidates)
    assert fields == ["status: done", "status: todo"]
    assert tracker.resolve_pronoun(USER, CONV, EntityKind.TASK) is None


@pytest.mark.asyncio
async def test_substring_single_match(resolver, repository):
    record = await repository.projects.create(USER, {"name": "Website redesign"})
    outcome = await resolver.resolve("redesign", EntityKind.PROJECT, USER, CONV)
    assert isinstance(outcome, EntityRef)
    assert outcome.id == record["id"]
    assert outcome.display_name == "Website redesign"


@pytest.mark.asyncio
async def test_substring_ambiguity_lists_every_match(resolver, repository):
    for title in ("Budget review", "Budget draft", "Budget approval"):
        await repository.tasks.create(USER, {"title": title})
    outcome = await resolver.resolve("budget", EntityKind.TASK, USER, CONV)
    assert isinstance(outcome, AmbiguousMatch)
    assert {c.title for c in outcome.candidates} == {"Budget review", "Budget draft", "Budget approval"}


@pytest.mark.asyncio
async def test_ambiguity_capped_at_max_candidates(repository, tracker):
    resolver = EntityResolver(repository, tracker, max_candidates=3)
    for i in range(6):
        await repository.notes.create(USER, {"title": f"Meeting notes {i}", "content": "..."})
    outcome = await resolver.resolve("meeting", EntityKind.NOTE, USER, CONV)
    assert isinstance(outcome, AmbiguousMatch)
    assert len(outcome.candidates) == 3


@pytest.mark.asyncio
async def test_like_wildcards_are_literal(resolver, repository):
    await repository.tasks.create(USER, {"title": "Grow revenue"})
    outcome = await resolver.resolve("%", EntityKind.TASK, USER, CONV)
    assert isinstance(outcome, NotFound)


@pytest.mark.asyncio
async def test_other_users_records_are_invisible(resolver, repository):
    theirs = await repository.tasks.create(OTHER_USER, {"title": "Secret plan"})

    by_title = await resolver.resolve("Secret plan", EntityKind.TASK, USER, CONV)
    by_id = await resolver.resolve(theirs["id"], EntityKind.TASK, USER, CONV)

    assert isinstance(by_title, NotFound)
    assert isinstance(by_id, NotFound)


@pytest.mark.asyncio
async def test_pronoun_round_trip(resolver, repository):
    record = await repository.events.create(
        USER,
        {"title": "Dentist", "start_time": datetime(2026, 5, 1, 9, 0)},
    )
    first = await resolver.resolve("Dentist", EntityKind.EVENT, USER, CONV)
    second = await resolver.resolve("it", EntityKind.EVENT, USER, CONV)
    assert first == second
    assert second.id == record["id"]


@pytest.mark.asyncio
async def test_pronoun_without_context(resolver):
    outcome = await resolver.resolve("it", EntityKind.TASK, USER, CONV)
    assert isinstance(outcome, NotFound)
    assert "mentioned" in outcome.hint


@pytest.mark.asyncio
async def test_pronoun_to_deleted_record_is_forgotten(resolver, repository, tracker):
    record = await repository.tasks.create(USER, {"title": "Old task"})
    await resolver.resolve("Old task", EntityKind.TASK, USER, CONV)
    await repository.tasks.soft_delete(USER, record["id"])

    outcome = await resolver.resolve("it", EntityKind.TASK, USER, CONV)

    assert isinstance(outcome, NotFound)
    assert tracker.resolve_pronoun(USER, CONV, EntityKind.TASK) is None


@pytest.mark.asyncio
async def test_trashed_scope(resolver, repository, tracker):
    record = await repository.tasks.create(USER, {"title": "Archived thing"})
    await repository.tasks.soft_delete(USER, record["id"])

    live = await resolver.resolve("Archived thing", EntityKind.TASK, USER, CONV)
    trashed = await resolver.resolve("Archived thing", EntityKind.TASK, USER, CONV, trashed=True)

    assert isinstance(live, NotFound)
    assert isinstance(trashed, EntityRef)
    assert tracker.resolve_pronoun(USER, CONV, EntityKind.TASK) is None


@pytest.mark.asyncio
async def test_require_raises(resolver, repository):
    await repository.tasks.create(USER, {"title": "Test", "status": "todo"})
    await repository.tasks.create(USER, {"title": "Test", "status": "done"})

    with pytest.raises(AmbiguousMatchError) as exc_info:
        await resolver.require("Test", EntityKind.TASK, USER, CONV)
    assert len(exc_info.value.candidates) == 2
    assert {"id", "title", "distinguishingField"} == set(exc_info.value.candidates[0])

    with pytest.raises(NotFoundError):
        await resolver.require("Nothing like this", EntityKind.TASK, USER, CONV)

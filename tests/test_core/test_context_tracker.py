"""Tests for ContextTracker: per-conversation last-mention memory."""

from __future__ import annotations

import asyncio

import pytest

from plannerai.core.context_tracker import ContextTracker
from plannerai.core.types import EntityKind, EntityRef


def _ref(kind=EntityKind.TASK, id="t1", name="Write report"):
    return EntityRef(kind=kind, id=id, display_name=name)


def test_empty_context_on_first_access():
    tracker = ContextTracker()
    ctx = tracker.get("u1", "c1")
    assert ctx.user_id == "u1"
    assert ctx.conversation_id == "c1"
    assert ctx.last_mentioned == {}


def test_record_and_resolve_latest_per_kind():
    tracker = ContextTracker()
    tracker.record_mention("u1", "c1", _ref(id="t1"))
    tracker.record_mention("u1", "c1", _ref(id="t2", name="Send invoice"))
    tracker.record_mention("u1", "c1", _ref(EntityKind.PROJECT, "p1", "Website"))

    assert tracker.resolve_pronoun("u1", "c1", EntityKind.TASK).id == "t2"
    assert tracker.resolve_pronoun("u1", "c1", EntityKind.PROJECT).id == "p1"
    assert tracker.resolve_pronoun("u1", "c1", EntityKind.NOTE) is None


def test_contexts_are_isolated_by_user_and_conversation():
    tracker = ContextTracker()
    tracker.record_mention("u1", "c1", _ref())
    assert tracker.resolve_pronoun("u1", "c2", EntityKind.TASK) is None
    assert tracker.resolve_pronoun("u2", "c1", EntityKind.TASK) is None


def test_snapshot_is_a_copy():
    tracker = ContextTracker()
    tracker.record_mention("u1", "c1", _ref())
    snap = tracker.get("u1", "c1")
    snap.last_mentioned.clear()
    assert tracker.resolve_pronoun("u1", "c1", EntityKind.TASK) is not None


def test_blank_conversation_records_nothing():
    tracker = ContextTracker()
    tracker.record_mention("u1", "", _ref())
    assert tracker.resolve_pronoun("u1", "", EntityKind.TASK) is None
    assert len(tracker) == 0


def test_forget_entity_only_clears_matching_id():
    tracker = ContextTracker()
    tracker.record_mention("u1", "c1", _ref(id="t1"))
    tracker.forget_entity("u1", "c1", EntityKind.TASK, "other")
    assert tracker.resolve_pronoun("u1", "c1", EntityKind.TASK).id == "t1"
    tracker.forget_entity("u1", "c1", EntityKind.TASK, "t1")
    assert tracker.resolve_pronoun("u1", "c1", EntityKind.TASK) is None


def test_deletion_moves_ref_to_trashed_slot():
    tracker = ContextTracker()
    tracker.record_mention("u1", "c1", _ref(id="t1"))
    tracker.record_deletion("u1", "c1", _ref(id="t1"))

    assert tracker.resolve_pronoun("u1", "c1", EntityKind.TASK) is None
    assert tracker.resolve_pronoun("u1", "c1", EntityKind.TASK, trashed=True).id == "t1"
    assert tracker.get("u1", "c1").last_deleted[EntityKind.TASK].id == "t1"

    tracker.record_mention("u1", "c1", _ref(id="t1"))
    assert tracker.resolve_pronoun("u1", "c1", EntityKind.TASK, trashed=True) is None

    tracker.record_deletion("u1", "c1", _ref(id="t1"))
    tracker.forget_entity("u1", "c1", EntityKind.TASK, "t1")
    assert tracker.resolve_pronoun("u1", "c1", EntityKind.TASK, trashed=True) is None


def test_forget_conversation():
    tracker = ContextTracker()
    tracker.record_mention("u1", "c1", _ref())
    tracker.forget("u1", "c1")
    assert len(tracker) == 0


@pytest.mark.asyncio
async def test_turn_lock_is_shared_per_conversation():
    tracker = ContextTracker()
    assert tracker.turn_lock("u1", "c1") is tracker.turn_lock("u1", "c1")
    assert tracker.turn_lock("u1", "c1") is not tracker.turn_lock("u1", "c2")

    order: list[str] = []

    async def turn(name: str, delay: float):
        async with tracker.turn_lock("u1", "c1"):
            order.append(f"{name}-start")
            await asyncio.sleep(delay)
            order.append(f"{name}-end")

    await asyncio.gather(turn("a", 0.02), turn("b", 0.0))
    assert order == ["a-start", "a-end", "b-start", "b-end"]

"""
Tests for the retrieval pipeline: hydration, one-hop link expansion, dedup and fallbacks.
"""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from engram.core.context_service import (
    CONTEXT_FAILED_MESSAGE,
    NO_CONTEXT_MESSAGE,
    ContextAssembler,
    format_context,
)
from engram.core.entities import RegistryEntityFetcher, RetrievedEntity
from engram.vector.errors import EmbeddingError

QUERY = np.array([1.0, 0.0], dtype=np.float32)


@pytest.fixture
def kv_store(store_factory):
    return store_factory("kv")


@pytest.fixture
def embedder():
    embedder = MagicMock()
    embedder.embed = AsyncMock(return_value=QUERY)
    return embedder


def task_loader(records):
    async def load(entity_id):
        return records.get(entity_id)
    return load


def make_assembler(store, embedder, loaders=None, **kwargs):
    fetcher = RegistryEntityFetcher(store)
    for entity_type, loader in (loaders or {}).items():
        fetcher.register(entity_type, loader)
    return ContextAssembler(store, embedder, fetcher, **kwargs)


def test_top_k_is_fixed_at_five(kv_store, embedder):
    assert make_assembler(kv_store, embedder).top_k == 5


@pytest.mark.asyncio
async def test_empty_partition_returns_no_context(kv_store, embedder):
    assembler = make_assembler(kv_store, embedder)

    assert await assembler.build_context("user-1", "what did I do?") == NO_CONTEXT_MESSAGE
    assert NO_CONTEXT_MESSAGE == "No relevant historical context found."


@pytest.mark.asyncio
async def test_single_match_exact_format(kv_store, embedder):
    await kv_store.add("user-1", "task", "t1", [1.0, 0.0])
    tasks = {"t1": {"id": "t1", "title": "Write report", "is_completed": False, "notes": ""}}
    assembler = make_assembler(kv_store, embedder, {"task": task_loader(tasks)})

    context = await assembler.build_context("user-1", "report")

    assert context == (
        "=== CORE RETRIEVED MEMORIES ===\n"
        "[Match 1 | Type: TASK]\n"
        "Task: Write report\n"
        "Status: Pending\n"
        "Notes: None"
    )


@pytest.mark.asyncio
async def test_core_matches_in_rank_order(kv_store, embedder):
    await kv_store.add("user-1", "note", "far", [0.2, 0.8])
    await kv_store.add("user-1", "note", "near", [0.9, 0.1])
    assembler = make_assembler(kv_store, embedder)

    context = await assembler.build_context("user-1", "query")

    assert context.index("[NOTE] ID: near") < context.index("[NOTE] ID: far")
    assert "[Match 1 | Type: NOTE]\n[NOTE] ID: near" in context
    assert "[Match 2 | Type: NOTE]\n[NOTE] ID: far" in context


@pytest.mark.asyncio
async def test_linked_core_match_appears_once(kv_store, embedder):
    """A link to an id that is already a core match is not repeated in the linked section."""
    await kv_store.add("user-1", "task", "A", [1.0, 0.0])
    await kv_store.add("user-1", "note", "X", [0.9, 0.1])
    tasks = {"A": {"id": "A", "title": "Plan trip", "is_completed": True, "linked_object_ids": ["X"]}}
    assembler = make_assembler(kv_store, embedder, {"task": task_loader(tasks)})

    context = await assembler.build_context("user-1", "trip")

    assert context.count("[NOTE] ID: X") == 1
    assert "=== CONNECTED/LINKED MEMORIES ===" not in context
    assert "Status: Done" in context


@pytest.mark.asyncio
async def test_links_expand_one_hop(kv_store, embedder):
    for i in range(5):
        await kv_store.add("user-1", "note", f"core{i}", [1.0, 0.01 * i])
    await kv_store.add("user-1", "task", "A", [0.95, 0.0])
    await kv_store.add("user-1", "habit", "H", [-1.0, 0.0])
    await kv_store.add("user-1", "habit", "deep", [-1.0, 0.5])

    tasks = {"A": {"id": "A", "title": "Run", "linked_object_ids": ["H"]}}
    habits = {
        "H": {"id": "H", "title": "Running", "weekly_goal_minutes": 90, "linked_object_ids": ["deep"]},
        "deep": {"id": "deep", "title": "Stretching", "weekly_goal_minutes": 30},
    }
    assembler = make_assembler(kv_store, embedder, {"task": task_loader(tasks), "habit": task_loader(habits)})

    context = await assembler.build_context("user-1", "exercise")

    core_section, linked_section = context.split("=== CONNECTED/LINKED MEMORIES ===\n")
    assert "[Match 1 | Type: NOTE]" in core_section
    assert "Task: Run" in core_section
    assert linked_section == "[Link 1 | Type: HABIT]\nHabit: Running\nGoal: 90 minutes/week\nNotes: None"
    assert "Stretching" not in context


@pytest.mark.asyncio
async def test_duplicate_and_self_links_collapse(kv_store, embedder):
    await kv_store.add("user-1", "task", "A", [1.0, 0.0])
    await kv_store.add("user-1", "task", "B", [0.99, 0.01])
    await kv_store.add("user-1", "project", "P", [-1.0, 0.0])
    await kv_store.add("user-1", "project", "filler1", [0.98, 0.02])
    await kv_store.add("user-1", "project", "filler2", [0.97, 0.03])
    await kv_store.add("user-1", "project", "filler3", [0.96, 0.04])

    tasks = {
        "A": {"id": "A", "title": "A", "linked_object_ids": ["A", "P"]},
        "B": {"id": "B", "title": "B", "linked_object_ids": ["P", "P"]},
    }
    projects = {
        "P": {"id": "P", "title": "Launch", "is_completed": False},
        "filler1": {"id": "filler1", "title": "f1"},
        "filler2": {"id": "filler2", "title": "f2"},
        "filler3": {"id": "filler3", "title": "f3"},
    }
    assembler = make_assembler(kv_store, embedder, {"task": task_loader(tasks), "project": task_loader(projects)})

    context = await assembler.build_context("user-1", "launch")

    assert context.count("Project: Launch") == 1
    assert "[Link 2 |" not in context
    assert context.count("Task: A\n") == 1


@pytest.mark.asyncio
async def test_unresolvable_links_are_dropped(kv_store, embedder):
    await kv_store.add("user-1", "task", "A", [1.0, 0.0])
    tasks = {"A": {"id": "A", "title": "A", "linked_object_ids": ["ghost"]}}
    assembler = make_assembler(kv_store, embedder, {"task": task_loader(tasks)})

    context = await assembler.build_context("user-1", "query")

    assert "ghost" not in context
    assert "=== CONNECTED/LINKED MEMORIES ===" not in context


@pytest.mark.asyncio
async def test_summary_matches_are_skipped(kv_store, embedder):
    await kv_store.add("user-1", "summary", "week-1", [1.0, 0.0])
    await kv_store.add("user-1", "insight", "i1", [0.5, 0.5])
    assembler = make_assembler(kv_store, embedder)

    context = await assembler.build_context("user-1", "query")

    assert "SUMMARY" not in context
    assert "[Match 1 | Type: INSIGHT]\n[INSIGHT] ID: i1" in context


@pytest.mark.asyncio
async def test_only_summaries_yield_no_context(kv_store, embedder):
    await kv_store.add("user-1", "summary", "week-1", [1.0, 0.0])
    assembler = make_assembler(kv_store, embedder)

    assert await assembler.build_context("user-1", "query") == NO_CONTEXT_MESSAGE


@pytest.mark.asyncio
async def test_individual_fetch_failures_are_skipped(kv_store, embedder):
    await kv_store.add("user-1", "task", "broken", [1.0, 0.0])
    await kv_store.add("user-1", "task", "ok", [0.9, 0.1])

    async def load(entity_id):
        if entity_id == "broken":
            raise ConnectionError("repository unavailable")
        return {"id": entity_id, "title": "Working task"}

    assembler = make_assembler(kv_store, embedder, {"task": load})
    context = await assembler.build_context("user-1", "query")

    assert "[Match 1 | Type: TASK]\nTask: Working task" in context
    assert "[Match 2" not in context


@pytest.mark.asyncio
async def test_deleted_source_records_are_skipped(kv_store, embedder):
    await kv_store.add("user-1", "task", "gone", [1.0, 0.0])
    assembler = make_assembler(kv_store, embedder, {"task": task_loader({})})

    assert await assembler.build_context("user-1", "query") == NO_CONTEXT_MESSAGE


@pytest.mark.asyncio
async def test_embedder_failure_returns_fallback(kv_store, embedder):
    await kv_store.add("user-1", "task", "t1", [1.0, 0.0])
    embedder.embed.side_effect = EmbeddingError("model not loaded")
    assembler = make_assembler(kv_store, embedder)

    assert await assembler.build_context("user-1", "query") == CONTEXT_FAILED_MESSAGE
    assert CONTEXT_FAILED_MESSAGE == "Context retrieval failed."


@pytest.mark.asyncio
async def test_embedder_timeout_returns_fallback(kv_store):
    await kv_store.add("user-1", "task", "t1", [1.0, 0.0])

    async def slow_embed(text):
        await asyncio.sleep(5)
        return QUERY

    embedder = MagicMock()
    embedder.embed = slow_embed
    assembler = make_assembler(kv_store, embedder, embed_timeout=0.01)

    assert await assembler.build_context("user-1", "query") == CONTEXT_FAILED_MESSAGE
    # The store is untouched and still usable
    assert await kv_store.count("user-1") == 1


@pytest.mark.asyncio
async def test_store_failure_returns_fallback(embedder):
    store = MagicMock()
    store.query = AsyncMock(side_effect=RuntimeError("disk I/O error"))
    fetcher = MagicMock()
    assembler = ContextAssembler(store, embedder, fetcher)

    assert await assembler.build_context("user-1", "query") == CONTEXT_FAILED_MESSAGE


@pytest.mark.asyncio
async def test_dimension_mismatch_returns_fallback(kv_store):
    await kv_store.add("user-1", "task", "t1", [1.0, 0.0, 0.0])
    embedder = MagicMock()
    embedder.embed = AsyncMock(return_value=QUERY)
    assembler = make_assembler(kv_store, embedder)

    assert await assembler.build_context("user-1", "query") == CONTEXT_FAILED_MESSAGE


@pytest.mark.asyncio
async def test_link_resolution_failure_is_skipped(embedder):
    store = MagicMock()
    store.query = AsyncMock(return_value=[MagicMock(entity_type="task", entity_id="A")])
    fetcher = MagicMock()
    fetcher.fetch_entity = AsyncMock(return_value=RetrievedEntity("A", "task", "Task: A", ["L"]))
    fetcher.resolve_entity_type = AsyncMock(side_effect=TimeoutError("lookup timed out"))
    assembler = ContextAssembler(store, embedder, fetcher)

    context = await assembler.build_context("user-1", "query")

    assert context == "=== CORE RETRIEVED MEMORIES ===\n[Match 1 | Type: TASK]\nTask: A"
    fetcher.resolve_entity_type.assert_awaited_once_with("L")


def test_format_context_with_links():
    core = [RetrievedEntity("j1", "journal_entry", "Journal (2025-01-01):\nQuiet day", [])]
    linked = [RetrievedEntity("a1", "appointment", "Appointment: Dentist", [])]

    assert format_context(core, linked) == (
        "=== CORE RETRIEVED MEMORIES ===\n"
        "[Match 1 | Type: JOURNAL_ENTRY]\n"
        "Journal (2025-01-01):\nQuiet day\n"
        "\n"
        "=== CONNECTED/LINKED MEMORIES ===\n"
        "[Link 1 | Type: APPOINTMENT]\n"
        "Appointment: Dentist"
    )

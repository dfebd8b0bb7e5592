"""Tests for the per-document status registry."""

from __future__ import annotations

import pytest

from marginalia.indexing.status import IndexState, IndexStatus, StatusRegistry


@pytest.mark.parametrize("state,searchable", [
    (IndexState.NOT_INDEXED, False),
    (IndexState.CHUNKING, False),
    (IndexState.CHUNKED_LEXICAL_READY, True),
    (IndexState.EMBEDDING_BACKFILL, True),
    (IndexState.FULLY_INDEXED, True),
])
def test_searchable_states(state, searchable):
    assert state.searchable is searchable


def test_unknown_document_defaults():
    assert StatusRegistry().get("doc") == IndexStatus("doc")


def test_update_changes_only_given_fields():
    registry = StatusRegistry()
    registry.update("doc", IndexState.CHUNKING, progress=10)
    status = registry.update("doc", chunk_count=7)
    assert status == IndexStatus("doc", IndexState.CHUNKING, 10, 7)
    assert registry.get("doc") == status


@pytest.mark.parametrize("given,stored", [(-5, 0), (50, 50), (250, 100)])
def test_progress_is_clamped(given, stored):
    assert StatusRegistry().update("doc", progress=given).progress == stored


def test_listeners_notified_until_unsubscribed():
    registry = StatusRegistry()
    seen: list[IndexStatus] = []
    unsubscribe = registry.subscribe(seen.append)

    registry.update("doc", IndexState.CHUNKING)
    unsubscribe()
    registry.update("doc", IndexState.CHUNKED_LEXICAL_READY)

    assert [s.state for s in seen] == [IndexState.CHUNKING]
    unsubscribe()


def test_forget_resets_to_default():
    registry = StatusRegistry()
    registry.update("doc", IndexState.FULLY_INDEXED, progress=100)
    registry.forget("doc")
    registry.forget("never-seen")
    assert registry.get("doc").state is IndexState.NOT_INDEXED


def test_state_values_are_wire_strings():
    assert IndexState("chunked_lexical_ready") is IndexState.CHUNKED_LEXICAL_READY
    assert IndexState.FULLY_INDEXED == "fully_indexed"

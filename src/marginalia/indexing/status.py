"""Per-document indexing status.

A document moves ``not_indexed -> chunking -> chunked_lexical_ready ->
embedding_backfill -> fully_indexed``; ``chunked_lexical_ready`` and later
states are searchable. ``StatusRegistry`` holds the in-memory view and
notifies listeners (the CLI progress display) on every change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class IndexState(str, Enum):
    NOT_INDEXED = "not_indexed"
    CHUNKING = "chunking"
    CHUNKED_LEXICAL_READY = "chunked_lexical_ready"
    EMBEDDING_BACKFILL = "embedding_backfill"
    FULLY_INDEXED = "fully_indexed"

    @property
    def searchable(self) -> bool:
        return self in (
            IndexState.CHUNKED_LEXICAL_READY,
            IndexState.EMBEDDING_BACKFILL,
            IndexState.FULLY_INDEXED,
        )


@dataclass(frozen=True)
class IndexStatus:
    document_id: str
    state: IndexState = IndexState.NOT_INDEXED
    progress: int = 0
    chunk_count: int = 0


StatusListener = Callable[[IndexStatus], None]


class StatusRegistry:
    def __init__(self) -> None:
        self._statuses: dict[str, IndexStatus] = {}
        self._listeners: list[StatusListener] = []

    def get(self, document_id: str) -> IndexStatus:
        return self._statuses.get(document_id, IndexStatus(document_id))

    def update(
        self,
        document_id: str,
        state: IndexState | None = None,
        progress: int | None = None,
        chunk_count: int | None = None,
    ) -> IndexStatus:
        """Change any of *state*, *progress* or *chunk_count* and notify listeners."""
        current = self.get(document_id)
        changes: dict[str, object] = {}
        if state is not None:
            changes["state"] = state
        if progress is not None:
            changes["progress"] = max(0, min(100, progress))
        if chunk_count is not None:
            changes["chunk_count"] = chunk_count
        status = replace(current, **changes)
        self._statuses[document_id] = status
        if status.state is not current.state:
            logger.debug("%s: %s -> %s", document_id, current.state.value, status.state.value)
        for listener in list(self._listeners):
            listener(status)
        return status

    def forget(self, document_id: str) -> None:
        self._statuses.pop(document_id, None)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register *listener*; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

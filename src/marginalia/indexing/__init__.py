"""marginalia background indexing: worker protocol, schedulers, persistence, backfill."""

from marginalia.indexing.backfill import EmbeddingBackfillQueue
from marginalia.indexing.persistence import BatchPersister
from marginalia.indexing.protocol import (
    ChunkBatch,
    Complete,
    IndexRequest,
    Progress,
    ProtocolError,
    parse_request,
    parse_response,
)
from marginalia.indexing.scheduler import (
    InlineScheduler,
    Scheduler,
    WorkerScheduler,
    WorkerUnavailableError,
    select_scheduler,
)
from marginalia.indexing.status import IndexState, IndexStatus, StatusRegistry

__all__ = [
    "EmbeddingBackfillQueue",
    "BatchPersister",
    "ChunkBatch",
    "Complete",
    "IndexRequest",
    "Progress",
    "ProtocolError",
    "parse_request",
    "parse_response",
    "InlineScheduler",
    "Scheduler",
    "WorkerScheduler",
    "WorkerUnavailableError",
    "select_scheduler",
    "IndexState",
    "IndexStatus",
    "StatusRegistry",
]

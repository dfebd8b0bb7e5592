"""Where chunking runs: a background worker process, or inline on the event loop.

Both schedulers expose ``run(request)``, an async iterator of validated
protocol messages for that one job. Capability detection happens once, in
``select_scheduler``; business logic never checks the environment itself.

- ``WorkerScheduler``: one long-lived worker process fed through a request
  queue. Responses are read off the response queue in a thread so the event
  loop never blocks. Messages for any other job id, or with an invalid
  shape, are dropped. A worker that cannot start or dies mid-job raises
  ``WorkerUnavailableError``; callers fall back to ``InlineScheduler``.
- ``InlineScheduler``: runs the same chunk-and-stream loop on the calling
  loop, yielding control every ``yield_every`` chapters.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import queue
import sys
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from marginalia.indexing.protocol import (
    Complete,
    IndexRequest,
    Progress,
    ProtocolError,
    WorkerResponse,
    parse_response,
)
from marginalia.indexing.worker import iter_index_messages, worker_main

logger = logging.getLogger(__name__)

DEFAULT_YIELD_EVERY = 3
_POLL_INTERVAL = 0.1
_SHUTDOWN_TIMEOUT = 5.0


class WorkerUnavailableError(RuntimeError):
    """The background worker could not be started or stopped responding."""


class Scheduler(ABC):
    """Runs an index job somewhere and streams its messages back."""

    name: str = "scheduler"
    structural: bool = True

    @abstractmethod
    def run(self, request: IndexRequest) -> AsyncIterator[WorkerResponse]:
        """Submit *request* and yield its messages, ending with ``Complete``.

        Closing the iterator early stops listening to the job; it does not
        interrupt work already handed to a background context.
        """

    async def close(self) -> None:
        """Release background resources. Safe to call more than once."""


class InlineScheduler(Scheduler):
    """Chunk on the calling event loop with cooperative yields."""

    name = "inline"

    def __init__(self, yield_every: int = DEFAULT_YIELD_EVERY, structural: bool = True) -> None:
        self._yield_every = max(1, yield_every)
        self.structural = structural

    async def run(self, request: IndexRequest) -> AsyncIterator[WorkerResponse]:
        for message in iter_index_messages(request, structural=self.structural):
            yield message
            if isinstance(message, Progress) and message.current % self._yield_every == 0:
                await asyncio.sleep(0)


class WorkerScheduler(Scheduler):
    """Chunk in a separate worker process, created on first use and reused.

    Args:
        structural: Passed to the worker's paragraph extractor.
        mp_context: multiprocessing context; defaults to the platform default.
        poll_interval: Seconds between liveness checks while waiting for messages.
    """

    name = "worker"

    def __init__(
        self,
        structural: bool = True,
        mp_context: Any | None = None,
        poll_interval: float = _POLL_INTERVAL,
    ) -> None:
        self.structural = structural
        self._ctx = mp_context or multiprocessing.get_context()
        self._poll_interval = poll_interval
        self._process: Any | None = None
        self._requests: Any | None = None
        self._responses: Any | None = None
        self._job_lock = asyncio.Lock()

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    async def run(self, request: IndexRequest) -> AsyncIterator[WorkerResponse]:
        # One job at a time: every job shares the single response queue.
        async with self._job_lock:
            self._ensure_started()
            self._requests.put(request.to_dict())
            logger.debug("Submitted job %s to worker pid=%s", request.job_id, self._process.pid)

            while True:
                raw = await asyncio.to_thread(self._next_raw)
                if raw is None:
                    continue
                try:
                    message = parse_response(raw)
                except ProtocolError as exc:
                    logger.warning("Dropping malformed worker message: %s", exc)
                    continue
                if message.job_id != request.job_id:
                    logger.debug("Dropping message for inactive job %s", message.job_id)
                    continue
                yield message
                if isinstance(message, Complete):
                    return

    async def close(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        if process.is_alive():
            self._requests.put(None)
            await asyncio.to_thread(process.join, _SHUTDOWN_TIMEOUT)
            if process.is_alive():
                process.terminate()
                await asyncio.to_thread(process.join, _SHUTDOWN_TIMEOUT)
        for q in (self._requests, self._responses):
            q.close()
            q.join_thread()
        self._requests = self._responses = None

    def _ensure_started(self) -> None:
        if self.alive:
            return
        try:
            requests = self._ctx.Queue()
            responses = self._ctx.Queue()
            process = self._ctx.Process(
                target=worker_main,
                args=(requests, responses, self.structural),
                name="marginalia-indexer",
                daemon=True,
            )
            process.start()
        except Exception as exc:
            raise WorkerUnavailableError(f"could not start indexing worker: {exc}") from exc
        self._requests, self._responses, self._process = requests, responses, process
        logger.info("Started indexing worker pid=%s", process.pid)

    def _next_raw(self) -> Any | None:
        """Block up to one poll interval for the next raw message; None on timeout."""
        try:
            return self._responses.get(timeout=self._poll_interval)
        except queue.Empty:
            if not self._process.is_alive():
                raise WorkerUnavailableError(
                    f"indexing worker exited with code {self._process.exitcode}"
                ) from None
            return None


def worker_supported() -> bool:
    """Return True if this platform can run a worker process."""
    if sys.platform in ("emscripten", "wasi"):
        return False
    try:
        channel = multiprocessing.get_context().Queue()
    except (ImportError, OSError, NotImplementedError):
        return False
    channel.close()
    return True


def select_scheduler(
    use_worker: bool = True,
    structural: bool = True,
    yield_every: int = DEFAULT_YIELD_EVERY,
) -> Scheduler:
    """Pick the scheduler once, at startup, from configuration and platform support."""
    if use_worker and worker_supported():
        return WorkerScheduler(structural=structural)
    if use_worker:
        logger.warning("Worker processes are not supported here; chunking inline.")
    return InlineScheduler(yield_every=yield_every, structural=structural)

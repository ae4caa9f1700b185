from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog

from .errors import CodexTransportError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class _Job(Generic[T]):
    factory: Callable[[], Awaitable[T]]
    future: asyncio.Future[T]


class SerialQueue:
    """FIFO task queue running at most one job at a time.

    Jobs are started in submission order by a single worker task; each runs to
    completion (success or failure) before the next one starts. A caller that
    stops waiting does not abort a job that has already started.
    """

    def __init__(self) -> None:
        self._jobs: asyncio.Queue[_Job[Any]] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._active = False

    @property
    def active(self) -> bool:
        """True while a job is running."""
        return self._active

    @property
    def waiting(self) -> int:
        """Number of submitted jobs that have not started yet."""
        return self._jobs.qsize() if self._jobs is not None else 0

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Queue `factory` and return the result of the coroutine it creates."""
        loop = asyncio.get_running_loop()
        jobs = self._ensure_worker(loop)
        future: asyncio.Future[T] = loop.create_future()
        jobs.put_nowait(_Job(factory, future))
        return await future

    async def close(self) -> None:
        """Stop the worker and fail the running job and any that never started."""
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        if self._jobs is not None:
            while not self._jobs.empty():
                job = self._jobs.get_nowait()
                if not job.future.done():
                    job.future.set_exception(CodexTransportError("session is closing"))
        self._jobs = None
        self._active = False

    def _ensure_worker(self, loop: asyncio.AbstractEventLoop) -> asyncio.Queue[_Job[Any]]:
        if (
            self._jobs is None
            or self._worker is None
            or self._worker.done()
            or self._worker.get_loop() is not loop
        ):
            self._jobs = asyncio.Queue()
            self._worker = loop.create_task(self._work(self._jobs))
        return self._jobs

    async def _work(self, jobs: asyncio.Queue[_Job[Any]]) -> None:
        while True:
            job = await jobs.get()
            if job.future.done():
                logger.debug("Skipping queued job abandoned by its caller")
                continue
            self._active = True
            try:
                result = await job.factory()
            except asyncio.CancelledError:
                # The caller is still waiting; hand it an ordinary failure.
                if not job.future.done():
                    job.future.set_exception(CodexTransportError("session is closing"))
                raise
            except Exception as exc:
                if not job.future.done():
                    job.future.set_exception(exc)
            else:
                if not job.future.done():
                    job.future.set_result(result)
            finally:
                self._active = False

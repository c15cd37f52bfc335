"""Threaded runner for detached dispatch jobs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from functools import lru_cache
from uuid import UUID

from ..core.config import get_settings

logger = logging.getLogger(__name__)


class DispatchRunner:
    """Run campaign dispatch jobs on a shared :class:`ThreadPoolExecutor`.

    Jobs are fire-and-forget: callers observe progress through the job and
    campaign rows, never through the returned future.
    """

    # Worker function signature
    Worker = Callable[[], None]

    def __init__(self, max_workers: int = 4):
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="dispatch"
        )

    def submit(self, job_id: UUID, fn: Worker) -> Future:
        future = self.executor.submit(fn)
        future.add_done_callback(lambda f: self._report(job_id, f))
        return future

    @staticmethod
    def _report(job_id: UUID, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Dispatch job %s crashed: %s", job_id, exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)


@lru_cache
def get_runner() -> DispatchRunner:
    return DispatchRunner(max_workers=get_settings().dispatch_max_workers)


def reset_runner() -> None:
    if get_runner.cache_info().currsize:
        get_runner().shutdown(wait=False)
    get_runner.cache_clear()

"""Single-flight rPPG worker running the extraction off the capture loop."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor

import structlog

from biofeedback_engine.vitals.messages import ProcessingRequest, VitalsError, VitalsResult
from biofeedback_engine.vitals.rppg import process_signal

logger = structlog.get_logger(__name__)


class RPPGWorker:
    """Request / response channel to an isolated extraction thread.

    At most one job is in flight.  A :meth:`submit` made while a job is
    running is refused (returns ``None``) rather than queued, so a slow job
    is never overlapped; callers keep using their last completed result.
    There is no timeout: a stuck job blocks new submissions until it
    resolves or errors.
    """

    def __init__(self, executor: ThreadPoolExecutor | None = None) -> None:
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="rppg")
        self._owns_executor = executor is None
        self._in_flight = False
        self.jobs_completed = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def submit(self, request: ProcessingRequest) -> VitalsResult | VitalsError | None:
        """Run one extraction job; ``None`` if another job is still running."""
        if self._in_flight:
            logger.debug("vitals.worker_busy")
            return None

        self._in_flight = True
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(self._executor, process_signal, request)
        except Exception as exc:
            logger.error("vitals.worker_error", error=str(exc))
            result = VitalsError(message=f"Worker failure: {exc}")
        finally:
            self._in_flight = False

        self.jobs_completed += 1
        if isinstance(result, VitalsError):
            logger.info("vitals.worker_rejected", message=result.message)
        return result

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

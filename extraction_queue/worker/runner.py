"""
Background Job Worker - Claims jobs from the queue and runs their pipelines.

Each worker slot runs one job to completion before claiming the next. Any
number of worker processes can share one database; the atomic claim is the
only coordination between them.
"""

import asyncio
import os
import signal
import time
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from extraction_queue.config import Settings, get_settings
from extraction_queue.core.logging import configure_logging
from extraction_queue.database import close_db, get_session_maker, init_db
from extraction_queue.models import utcnow
from extraction_queue.pipeline import PipelineExecutor
from extraction_queue.services import (
    ProgressStore,
    claim_job,
    purge_completed,
    reclaim_stale_locks,
)

logger = structlog.get_logger(__name__)


def make_worker_id() -> str:
    return f"worker-{os.getpid()}-{int(time.time() * 1000)}"


class Worker:
    """Poll loop(s) plus the periodic maintenance task."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        executor: PipelineExecutor,
        settings: Settings | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.executor = executor
        self.settings = settings or get_settings()
        self.worker_id = worker_id or make_worker_id()
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        """Stop claiming new jobs; in-flight jobs run to completion."""
        if not self._stop.is_set():
            logger.info("shutdown_requested", worker_id=self.worker_id)
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def process_next_job(self, slot_id: str | None = None) -> bool:
        """
        Claim one job and run it.

        Returns:
            True if a job was claimed, False if the queue was empty
        """
        worker_id = slot_id or self.worker_id
        async with self.session_maker() as db:
            job = await claim_job(db, worker_id)
        if job is None:
            return False

        with structlog.contextvars.bound_contextvars(job_id=job.id, worker_id=worker_id):
            await logger.ainfo("starting_job", type=job.type, priority=job.priority)
            resolved = await self.executor.execute(job)
            await logger.ainfo(
                "finished_job",
                status=resolved.status if resolved else None,
            )
        return True

    async def run_maintenance(self) -> tuple[int, int]:
        """Reclaim stale locks, then purge old finished jobs."""
        async with self.session_maker() as db:
            reclaimed = await reclaim_stale_locks(
                db, timedelta(minutes=self.settings.lock_timeout_minutes)
            )
            purged = await purge_completed(
                db,
                utcnow() - timedelta(minutes=self.settings.purge_after_minutes),
                self.executor.store,
            )
        return reclaimed, purged

    async def _slot_loop(self, slot: int) -> None:
        poll_interval = self.settings.worker_poll_interval
        backoff = poll_interval
        slot_id = self.worker_id if self.settings.worker_concurrency <= 1 else f"{self.worker_id}-{slot}"

        while not self.stopping:
            try:
                processed = await self.process_next_job(slot_id)
                backoff = poll_interval
                if not processed:
                    await self._sleep(poll_interval)
            except Exception as e:
                backoff = min(backoff * 2, self.settings.worker_max_backoff)
                await logger.aerror(
                    "worker_loop_error",
                    slot=slot,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await self._sleep(backoff)

    async def _maintenance_loop(self) -> None:
        while not self.stopping:
            try:
                await self.run_maintenance()
            except Exception as e:
                await logger.aerror("maintenance_error", error=str(e))
            await self._sleep(self.settings.maintenance_interval_seconds)

    async def run(self) -> None:
        """Run worker slots and maintenance until stop is requested."""
        concurrency = max(self.settings.worker_concurrency, 1)
        await logger.ainfo(
            "worker_started",
            worker_id=self.worker_id,
            poll_interval=self.settings.worker_poll_interval,
            concurrency=concurrency,
        )

        tasks = [asyncio.create_task(self._slot_loop(i)) for i in range(concurrency)]
        tasks.append(asyncio.create_task(self._maintenance_loop()))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        await logger.ainfo("worker_stopped", worker_id=self.worker_id)


async def main() -> None:
    """Main entry point for the worker."""
    settings = get_settings()
    configure_logging(settings)

    await logger.ainfo("initializing_worker")
    await init_db()

    worker = Worker(
        get_session_maker(),
        PipelineExecutor(get_session_maker(), ProgressStore.from_settings(settings), settings),
        settings,
    )

    # Register signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.request_stop)

    try:
        await worker.run()
    finally:
        await close_db()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()

"""
Pipeline Executor - Drives a claimed job through its steps.

The progress snapshot is persisted on every step transition, so a crash at
any point leaves a readable record of which step was running. The job store
stays the source of truth for job status: the executor resolves the job with
complete/fail once the snapshot reaches a terminal state.

Step failures are contained here (the job fails, the worker moves on).
PersistenceError is not: it propagates so the worker loop can back off and
the reclaimer can pick the job up later.
"""

import asyncio
import time
from collections import deque
from datetime import datetime
from typing import Any, Literal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from extraction_queue.config import Settings, get_settings
from extraction_queue.core.errors import (
    PayloadValidationError,
    PersistenceError,
    StepFailure,
)
from extraction_queue.models import Job, JobType, utcnow
from extraction_queue.pipeline.steps import (
    Pipeline,
    RunPaths,
    StepContext,
    build_pipeline,
)
from extraction_queue.schemas.payloads import ExtractionPayload, parse_payload
from extraction_queue.schemas.progress import (
    AgentStatus,
    ProgressSnapshot,
    RunLogEntry,
    StepProgress,
)
from extraction_queue.services.progress import ProgressStore
from extraction_queue.services.queue import complete_job, fail_job

logger = structlog.get_logger(__name__)

MAX_AGENT_ENTRIES = 100


class ProgressRecorder:
    """
    Owns the snapshot of one run and writes it through the progress store.

    Log lines are buffered (last `max_lines` of the active step) and flushed
    at most every `flush_interval` seconds; step transitions always flush.
    """

    def __init__(
        self,
        store: ProgressStore,
        snapshot: ProgressSnapshot,
        max_lines: int = 200,
        flush_interval: float = 0.5,
    ) -> None:
        self.store = store
        self.snapshot = snapshot
        self.flush_interval = flush_interval
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._agent_entries: deque[RunLogEntry] = deque(maxlen=MAX_AGENT_ENTRIES)
        self._lock = asyncio.Lock()
        self._last_flush = 0.0
        self._pending_write: asyncio.Future[None] | None = None

    async def flush(self) -> None:
        """
        Write the snapshot as it is now.

        The write itself is shielded: a caller cancelled mid-flush (e.g. on a
        step timeout) leaves it running, and the next flush waits for it so
        writes land in order.
        """
        async with self._lock:
            previous = self._pending_write
            if previous is not None and not previous.done():
                await asyncio.wait([previous])

            self.snapshot.logs = "\n".join(self._lines)
            if self._agent_entries:
                self.snapshot.agent_logs = list(self._agent_entries)
            write = asyncio.ensure_future(
                self.store.write_snapshot(
                    self.snapshot.job_id, self.snapshot.model_copy(deep=True)
                )
            )
            self._pending_write = write
            await asyncio.shield(write)
            self._last_flush = time.monotonic()

    async def _maybe_flush(self) -> None:
        if time.monotonic() - self._last_flush >= self.flush_interval:
            await self.flush()

    async def append_log(self, line: str) -> None:
        self._lines.append(line)
        await self._maybe_flush()

    def append_log_threadsafe(self, loop: asyncio.AbstractEventLoop, line: str) -> None:
        loop.call_soon_threadsafe(self._lines.append, line)

    async def start_step(self, step_id: str) -> None:
        self._lines.clear()
        self.snapshot.step(step_id).status = "running"
        self.snapshot.current_step = step_id
        await self.flush()

    async def complete_step(self, step_id: str) -> None:
        self.snapshot.step(step_id).status = "completed"
        self.snapshot.current_step = None
        await self.flush()

    async def fail_step(self, step_id: str, error: str) -> None:
        step = self.snapshot.step(step_id)
        step.status = "error"
        step.error = error
        self.snapshot.current_step = None
        if self.snapshot.agent_status == "running":
            self.snapshot.agent_status = "failed"
        self._lines.append(f"ERROR: {error}")
        await self.flush()

    async def start_agent(self, run_id: str) -> None:
        self.snapshot.agent_status = "running"
        self.snapshot.agent_run_id = run_id
        self._agent_entries.clear()
        await self.flush()

    async def add_agent_entry(self, entry: RunLogEntry) -> None:
        self._agent_entries.append(entry)
        await self._maybe_flush()

    async def finish_agent(self, status: AgentStatus) -> None:
        self.snapshot.agent_status = status
        await self.flush()

    async def finish(self, status: Literal["completed", "failed"], completed_at: datetime) -> None:
        self.snapshot.status = status
        self.snapshot.current_step = None
        self.snapshot.completed_at = completed_at
        await self.flush()


class PipelineExecutor:
    """Runs claimed jobs to completion and resolves them in the job store."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store: ProgressStore,
        settings: Settings | None = None,
        pipelines: dict[str, Pipeline] | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.store = store
        self.settings = settings or get_settings()
        # Explicit pipelines take precedence over the registered factories
        self.pipelines = pipelines or {}

    def pipeline_for(self, job_type: str) -> Pipeline:
        if job_type in self.pipelines:
            return self.pipelines[job_type]
        return build_pipeline(job_type, self.settings)

    def _run_name(self, job: Job) -> str:
        name = job.payload.get("name") if isinstance(job.payload, dict) else None
        return str(name or f"{job.type}-{job.id[:8]}")

    async def execute(self, job: Job) -> Job | None:
        """
        Run every step of the job's pipeline in order.

        Returns:
            The resolved job, or None if the job was no longer claimed by
            this worker when the run finished

        Raises:
            PersistenceError: If the snapshot or the job store cannot be written
        """
        log = logger.bind(job_id=job.id, type=job.type)
        started_at = utcnow()

        try:
            pipeline = self.pipeline_for(job.type)
        except KeyError:
            pipeline = Pipeline(job_type=job.type, steps=[])

        snapshot = ProgressSnapshot(
            job_id=job.id,
            name=self._run_name(job),
            step_progress=[StepProgress(step_id=s.step_id) for s in pipeline.steps],
            started_at=started_at,
        )
        recorder = ProgressRecorder(
            self.store,
            snapshot,
            max_lines=self.settings.progress_log_lines,
            flush_interval=self.settings.progress_flush_interval,
        )
        await recorder.flush()

        if not pipeline.steps:
            return await self._fail(job, recorder, f"No pipeline registered for job type '{job.type}'")

        try:
            payload = parse_payload(job.type, job.payload)
        except PayloadValidationError as e:
            return await self._fail(job, recorder, e.message)

        ctx = StepContext(job=job, payload=payload, settings=self.settings, recorder=recorder)
        if job.type == JobType.EXTRACTION.value and isinstance(payload, ExtractionPayload):
            ctx.paths = RunPaths.for_job(self.settings, job, payload)

        await log.ainfo("pipeline_started", steps=[s.step_id for s in pipeline.steps])

        for step in pipeline.steps:
            await recorder.start_step(step.step_id)
            timeout = step.timeout or self.settings.step_timeout_seconds
            await log.ainfo("step_started", step_id=step.step_id, description=step.description)

            failure: StepFailure | None = None
            try:
                await asyncio.wait_for(step.action(ctx), timeout=timeout)
            except PersistenceError:
                raise
            except asyncio.TimeoutError:
                failure = StepFailure(step.step_id, f"timed out after {timeout:g}s")
            except StepFailure as e:
                failure = e
            except Exception as e:
                failure = StepFailure(step.step_id, str(e) or type(e).__name__)

            if failure is not None:
                await recorder.fail_step(step.step_id, failure.reason)
                await log.aerror(
                    "step_failed",
                    step_id=step.step_id,
                    error_code=failure.error_code.value,
                    error=failure.reason,
                )
                return await self._fail(job, recorder, failure.message)

            await recorder.complete_step(step.step_id)
            await log.ainfo("step_completed", step_id=step.step_id)

        completed_at = utcnow()
        try:
            result = self._build_result(pipeline, ctx, started_at, completed_at)
        except (OSError, ValueError) as e:
            await log.aerror("result_build_failed", error=str(e))
            return await self._fail(job, recorder, f"Could not build result: {e}")
        await recorder.finish("completed", completed_at)

        async with self.session_maker() as db:
            resolved = await complete_job(db, job.id, result, worker_id=job.locked_by)

        await log.ainfo(
            "pipeline_completed",
            duration_ms=int((completed_at - started_at).total_seconds() * 1000),
        )
        return resolved

    def _build_result(
        self,
        pipeline: Pipeline,
        ctx: StepContext,
        started_at: datetime,
        completed_at: datetime,
    ) -> dict[str, Any]:
        if pipeline.build_result is not None:
            return pipeline.build_result(ctx, started_at, completed_at)
        return {
            "jobId": ctx.job.id,
            "startedAt": started_at.isoformat(),
            "completedAt": completed_at.isoformat(),
            **ctx.state.get("result", {}),
        }

    async def _fail(self, job: Job, recorder: ProgressRecorder, error: str) -> Job | None:
        await recorder.finish("failed", utcnow())
        async with self.session_maker() as db:
            return await fail_job(db, job.id, error, worker_id=job.locked_by)

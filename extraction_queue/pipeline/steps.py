"""
Pipeline Steps - Ordered step definitions per job type.

Each job type has a fixed list of steps. Steps are written to be safe to
re-run from the top: a retried job starts again at step one.
"""

import asyncio
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from extraction_queue.config import Settings
from extraction_queue.core.errors import StepFailure
from extraction_queue.core.git import CloneError, clone_repository, list_files
from extraction_queue.core.process import format_command, run_command
from extraction_queue.models import Job, JobType
from extraction_queue.schemas.payloads import (
    CreateFilePayload,
    DeleteFilePayload,
    EchoPayload,
    ExtractionPayload,
    PayloadBase,
)
from extraction_queue.schemas.progress import ExtractionResult
from extraction_queue.services.progress import atomic_write_text

if TYPE_CHECKING:
    from extraction_queue.pipeline.executor import ProgressRecorder

logger = structlog.get_logger(__name__)

StepAction = Callable[["StepContext"], Awaitable[None]]
ResultBuilder = Callable[["StepContext", datetime, datetime], dict[str, Any]]


@dataclass(frozen=True)
class StepDefinition:
    """One step of a pipeline."""

    step_id: str
    description: str
    action: StepAction
    timeout: float | None = None  # seconds; None uses the configured default


@dataclass(frozen=True)
class RunPaths:
    """Filesystem layout of one extraction run."""

    app_dir: Path
    source_dir: Path
    extracted_dir: Path

    @classmethod
    def for_job(cls, settings: Settings, job: Job, payload: ExtractionPayload) -> "RunPaths":
        app_dir = settings.apps_path / f"{payload.app_name}-{job.id[:8]}"
        return cls(
            app_dir=app_dir,
            source_dir=app_dir / "src" / "source",
            extracted_dir=app_dir / "src" / "app" / "extracted",
        )


@dataclass
class StepContext:
    """State shared by the steps of one run."""

    job: Job
    payload: PayloadBase
    settings: Settings
    recorder: "ProgressRecorder"
    paths: RunPaths | None = None
    state: dict[str, Any] = field(default_factory=dict)

    async def log(self, line: str) -> None:
        await self.recorder.append_log(line)

    def log_threadsafe(self, loop: asyncio.AbstractEventLoop) -> Callable[[str], None]:
        """A line callback usable from worker threads."""
        return lambda line: self.recorder.append_log_threadsafe(loop, line)

    def require_paths(self, step_id: str) -> RunPaths:
        if self.paths is None:
            raise StepFailure(step_id, "run directories were not resolved for this job")
        return self.paths

    async def run(self, step_id: str, argv: list[str], cwd: Path) -> None:
        """Run a command with its output streamed into the step log."""
        await self.log(f"$ {' '.join(argv)}")
        try:
            code = await run_command(argv, cwd, self.log)
        except OSError as e:
            raise StepFailure(step_id, f"could not start {argv[0]}: {e}") from e
        if code != 0:
            raise StepFailure(step_id, f"{argv[0]} exited with code {code}")


@dataclass(frozen=True)
class Pipeline:
    """Steps for a job type plus how to build the job result."""

    job_type: str
    steps: list[StepDefinition]
    build_result: ResultBuilder | None = None

    def with_action(self, step_id: str, action: StepAction) -> "Pipeline":
        """Copy of the pipeline with one step's action replaced."""
        if step_id not in {s.step_id for s in self.steps}:
            raise KeyError(step_id)
        steps = [
            replace(step, action=action) if step.step_id == step_id else step
            for step in self.steps
        ]
        return replace(self, steps=steps)


# Extraction steps


async def scaffold_app(ctx: StepContext) -> None:
    app_dir = ctx.require_paths("scaffold").app_dir
    if app_dir.exists():
        # Leftover from an earlier attempt of this job
        await ctx.log(f"Removing stale app directory {app_dir}")
        await asyncio.to_thread(shutil.rmtree, app_dir)

    ctx.settings.apps_path.mkdir(parents=True, exist_ok=True)
    argv = format_command(ctx.settings.scaffold_command, app_name=app_dir.name)
    await ctx.run("scaffold", argv, ctx.settings.apps_path)

    if not app_dir.is_dir():
        raise StepFailure("scaffold", f"scaffold command did not create {app_dir.name}")


async def create_folders(ctx: StepContext) -> None:
    paths = ctx.require_paths("folders")
    for folder in (paths.source_dir, paths.extracted_dir):
        folder.mkdir(parents=True, exist_ok=True)
        await ctx.log(f"Created {folder.relative_to(paths.app_dir)}")


async def clone_source(ctx: StepContext) -> None:
    paths = ctx.require_paths("clone")
    payload: ExtractionPayload = ctx.payload  # type: ignore[assignment]
    if not payload.origin_url:
        await ctx.log("No origin URL for this job; source folder left empty")
        return

    await ctx.log(f"Cloning {payload.origin_url} into {paths.source_dir}")
    try:
        commit_hash = await clone_repository(
            payload.origin_url,
            paths.source_dir,
            depth=ctx.settings.clone_depth,
            attempts=ctx.settings.clone_attempts,
            on_line=ctx.log,
            branch=payload.branch,
        )
    except CloneError as e:
        raise StepFailure("clone", str(e)) from e

    ctx.state["commit_hash"] = commit_hash
    await ctx.log(f"Checked out {commit_hash}")


def _copy_tree(src: Path, dest: Path, on_copy: Callable[[str], None]) -> int:
    copied = 0
    for item in sorted(src.rglob("*")):
        target = dest / item.relative_to(src)
        if item.is_dir():
            target.mkdir(parents=True, exist_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(item, target)
        on_copy(f"'{item}' -> '{target}'")
        copied += 1
    return copied


async def copy_templates(ctx: StepContext) -> None:
    paths = ctx.require_paths("templates")
    template_dir = ctx.settings.template_dir
    if not template_dir.is_dir():
        raise StepFailure("templates", f"template directory not found: {template_dir}")

    loop = asyncio.get_running_loop()
    copied = await asyncio.to_thread(
        _copy_tree,
        template_dir,
        paths.extracted_dir,
        ctx.log_threadsafe(loop),
    )
    await ctx.log(f"Copied {copied} template files")


def build_extraction_result(
    ctx: StepContext, started_at: datetime, completed_at: datetime
) -> dict[str, Any]:
    if ctx.paths is None:
        raise ValueError("run directories were not resolved for this job")
    payload: ExtractionPayload = ctx.payload  # type: ignore[assignment]
    agent = ctx.state.get("agent", {})
    result = ExtractionResult(
        job_id=ctx.job.id,
        name=payload.name,
        origin_url=payload.origin_url,
        prompt=payload.prompt,
        prompt_hash=payload.prompt_hash,
        app_dir=str(ctx.paths.app_dir),
        source_dir=str(ctx.paths.source_dir),
        extracted_dir=str(ctx.paths.extracted_dir),
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=int((completed_at - started_at).total_seconds() * 1000),
        extracted_files=list_files(ctx.paths.extracted_dir),
        agent_run_id=agent.get("run_id"),
        agent_model=agent.get("model"),
        agent_turns=agent.get("turns"),
    )
    return result.model_dump(mode="json", by_alias=True)


def extraction_pipeline(settings: Settings) -> Pipeline:
    from extraction_queue.pipeline.agent import run_agent

    return Pipeline(
        job_type=JobType.EXTRACTION.value,
        steps=[
            StepDefinition("scaffold", "Creating app scaffold", scaffold_app),
            StepDefinition("folders", "Creating source and extracted folders", create_folders),
            StepDefinition("clone", "Cloning source repository", clone_source),
            StepDefinition("templates", "Copying template files", copy_templates),
            StepDefinition(
                "agent",
                "Running AI agent extraction",
                run_agent,
                timeout=settings.agent_timeout_seconds,
            ),
        ],
        build_result=build_extraction_result,
    )


# Single-step utility jobs


def _resolve_path(ctx: StepContext, raw: str) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else ctx.settings.storage_path / path


async def echo_message(ctx: StepContext) -> None:
    payload: EchoPayload = ctx.payload  # type: ignore[assignment]
    await ctx.log(payload.message)
    ctx.state["result"] = {"message": payload.message}


async def create_file(ctx: StepContext) -> None:
    payload: CreateFilePayload = ctx.payload  # type: ignore[assignment]
    path = _resolve_path(ctx, payload.path)
    if path.exists() and not payload.overwrite:
        await ctx.log(f"File already exists, skipping: {path}")
        ctx.state["result"] = {"path": str(path), "written": False}
        return

    await asyncio.to_thread(atomic_write_text, path, payload.content)
    await ctx.log(f"Created: {path}")
    ctx.state["result"] = {"path": str(path), "written": True}


async def delete_file(ctx: StepContext) -> None:
    payload: DeleteFilePayload = ctx.payload  # type: ignore[assignment]
    path = _resolve_path(ctx, payload.path)
    try:
        await asyncio.to_thread(path.unlink)
    except FileNotFoundError:
        if payload.require_exists:
            raise StepFailure("delete", f"File not found: {path}")
        await ctx.log(f"File already gone: {path}")
        ctx.state["result"] = {"path": str(path), "deleted": False}
        return

    await ctx.log(f"Deleted: {path}")
    ctx.state["result"] = {"path": str(path), "deleted": True}


def _single_step(job_type: JobType, step_id: str, description: str, action: StepAction) -> Pipeline:
    return Pipeline(job_type=job_type.value, steps=[StepDefinition(step_id, description, action)])


PIPELINE_FACTORIES: dict[str, Callable[[Settings], Pipeline]] = {
    JobType.EXTRACTION.value: extraction_pipeline,
    JobType.ECHO.value: lambda settings: _single_step(
        JobType.ECHO, "echo", "Echoing message", echo_message
    ),
    JobType.CREATE_FILE.value: lambda settings: _single_step(
        JobType.CREATE_FILE, "write", "Writing file", create_file
    ),
    JobType.DELETE_FILE.value: lambda settings: _single_step(
        JobType.DELETE_FILE, "delete", "Deleting file", delete_file
    ),
}


def build_pipeline(job_type: str, settings: Settings) -> Pipeline:
    """
    Build the step list for a job type.

    Raises:
        KeyError: If no pipeline is registered for the type
    """
    return PIPELINE_FACTORIES[job_type](settings)

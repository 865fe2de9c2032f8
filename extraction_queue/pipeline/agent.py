"""
Agent Step - Runs the external AI coding agent inside the created app.

The agent is a subprocess that prints one JSON event per line. Each event is
kept in the run log (keyed by run id) and mirrored into the progress
snapshot while the step is still running.
"""

import json
from typing import Any
from uuid import uuid4

import structlog

from extraction_queue.core.errors import AgentFailure
from extraction_queue.core.process import format_command, run_command
from extraction_queue.models import utcnow
from extraction_queue.pipeline.steps import StepContext
from extraction_queue.schemas.payloads import ExtractionPayload
from extraction_queue.schemas.progress import RunLogEntry

logger = structlog.get_logger(__name__)

STEP_ID = "agent"


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return ""


def parse_agent_line(line: str) -> RunLogEntry:
    """
    Turn one line of agent output into a run log entry.

    JSON objects keep their `type` and full body; anything else is recorded
    as plain output.
    """
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        event = None

    if not isinstance(event, dict):
        return RunLogEntry(timestamp=utcnow(), type="output", message=line)

    event_type = str(event.get("type") or "message")
    message = event.get("result")
    if not isinstance(message, str):
        inner = event.get("message")
        if isinstance(inner, dict):
            message = _text_of(inner.get("content"))
        elif isinstance(inner, str):
            message = inner
        else:
            message = ""
    return RunLogEntry(timestamp=utcnow(), type=event_type, message=message, data=event)


def summarize_run(entries: list[RunLogEntry]) -> dict[str, Any]:
    """Pull model, turn count and error flag out of the agent's events."""
    model = None
    turns = None
    is_error = False
    for entry in entries:
        data = entry.data or {}
        if model is None and isinstance(data.get("model"), str):
            model = data["model"]
        if entry.type == "result":
            if isinstance(data.get("num_turns"), int):
                turns = data["num_turns"]
            is_error = bool(data.get("is_error")) or data.get("subtype", "success") != "success"
    return {"model": model, "turns": turns, "is_error": is_error}


async def run_agent(ctx: StepContext) -> None:
    paths = ctx.require_paths(STEP_ID)
    payload: ExtractionPayload = ctx.payload  # type: ignore[assignment]
    settings = ctx.settings
    run_id = f"{ctx.job.id}-{uuid4().hex[:8]}"

    argv = format_command(
        settings.agent_command,
        prompt=payload.prompt,
        model=settings.agent_model,
        app_name=paths.app_dir.name,
    )
    entries: list[RunLogEntry] = []

    async def on_line(line: str) -> None:
        if not line.strip():
            return
        entry = parse_agent_line(line)
        entries.append(entry)
        await ctx.recorder.add_agent_entry(entry)
        if entry.message:
            await ctx.log(entry.message.splitlines()[0][:500])

    await ctx.recorder.start_agent(run_id)
    await ctx.log(f"Starting agent run {run_id} in {paths.app_dir}")
    try:
        code = await run_command(argv, paths.app_dir, on_line)
    except OSError as e:
        raise AgentFailure(STEP_ID, f"could not start {argv[0]}: {e}") from e
    finally:
        await ctx.recorder.store.write_run_log(run_id, entries)

    summary = summarize_run(entries)
    ctx.state["agent"] = {
        "run_id": run_id,
        "model": summary["model"] or settings.agent_model,
        "turns": summary["turns"],
    }

    if code != 0:
        raise AgentFailure(STEP_ID, f"agent exited with code {code}")
    if summary["is_error"]:
        raise AgentFailure(STEP_ID, "agent reported an unsuccessful result")

    await ctx.recorder.finish_agent("completed")
    await logger.ainfo(
        "agent_run_completed",
        job_id=ctx.job.id,
        run_id=run_id,
        turns=summary["turns"],
        entries=len(entries),
    )

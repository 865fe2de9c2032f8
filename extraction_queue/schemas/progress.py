"""
Progress Schemas - Durable per-run records written by the pipeline executor.

Serialized with camelCase keys; these files are read by external viewers.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

StepStatus = Literal["pending", "running", "completed", "error"]
RunStatus = Literal["processing", "completed", "failed"]
AgentStatus = Literal["not_started", "running", "completed", "failed"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepProgress(CamelModel):
    """State of one pipeline step within a run."""

    step_id: str
    status: StepStatus = "pending"
    error: str | None = None


class RunLogEntry(CamelModel):
    """One structured event emitted by the agent process."""

    timestamp: datetime
    type: str = Field(default="message", description="Event type reported by the agent")
    message: str = ""
    data: dict[str, Any] | None = None


class ProgressSnapshot(CamelModel):
    """Whole-value snapshot of a job run, replaced on every transition."""

    job_id: str
    name: str
    status: RunStatus = "processing"
    step_progress: list[StepProgress]
    current_step: str | None = None
    logs: str = ""
    agent_status: AgentStatus = "not_started"
    agent_logs: list[RunLogEntry] | None = None
    agent_run_id: str | None = None
    started_at: datetime
    completed_at: datetime | None = None

    def step(self, step_id: str) -> StepProgress:
        for entry in self.step_progress:
            if entry.step_id == step_id:
                return entry
        raise KeyError(step_id)

    @property
    def running_steps(self) -> list[str]:
        return [s.step_id for s in self.step_progress if s.status == "running"]


class ExtractionResult(CamelModel):
    """Final artifact of a successful extraction run."""

    job_id: str
    name: str
    origin_url: str | None = None
    prompt: str
    prompt_hash: str | None = None
    app_dir: str
    source_dir: str
    extracted_dir: str
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    extracted_files: list[str] = Field(default_factory=list)
    agent_run_id: str | None = None
    agent_model: str | None = None
    agent_turns: int | None = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

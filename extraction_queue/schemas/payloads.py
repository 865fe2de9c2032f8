"""
Payload Schemas - Per-type validation of job payloads.

Every job type maps to one pydantic model. Payloads are validated on enqueue
(nothing is persisted if validation fails) and again when a worker picks the
job up.
"""

import hashlib
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from extraction_queue.core.errors import PayloadValidationError
from extraction_queue.models import JobType

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_length: int = 50) -> str:
    """Lowercase, hyphen-separated form of `text` usable as a directory name."""
    slug = _SLUG_PATTERN.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")


class PayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ExtractionPayload(PayloadBase):
    """Extract a component from a source repository with the AI agent."""

    name: str = Field(..., min_length=1, max_length=200, description="Human-readable run name")
    prompt: str = Field(..., min_length=1, description="Instructions for the agent")
    origin_url: str | None = Field(default=None, description="Repository to clone as source")
    branch: str | None = None
    requirement_id: str | None = None
    prompt_hash: str | None = None

    @model_validator(mode="after")
    def fill_prompt_hash(self) -> "ExtractionPayload":
        if not slugify(self.name):
            raise ValueError("name must contain at least one letter or digit")
        if not self.prompt_hash:
            self.prompt_hash = hashlib.sha256(self.prompt.encode("utf-8")).hexdigest()[:16]
        return self

    @property
    def app_name(self) -> str:
        """Directory name of the app created for this run."""
        return slugify(self.name)


class EchoPayload(PayloadBase):
    message: str


class CreateFilePayload(PayloadBase):
    path: str = Field(..., min_length=1)
    content: str
    overwrite: bool = False


class DeleteFilePayload(PayloadBase):
    path: str = Field(..., min_length=1)
    require_exists: bool = False


PAYLOAD_MODELS: dict[str, type[PayloadBase]] = {
    JobType.EXTRACTION.value: ExtractionPayload,
    JobType.ECHO.value: EchoPayload,
    JobType.CREATE_FILE.value: CreateFilePayload,
    JobType.DELETE_FILE.value: DeleteFilePayload,
}


def parse_payload(job_type: str, payload: Any) -> PayloadBase:
    """
    Validate a raw payload against the model registered for `job_type`.

    A `type` key inside the payload is accepted when it repeats the job type.

    Raises:
        PayloadValidationError: Unknown type or malformed payload
    """
    model = PAYLOAD_MODELS.get(job_type)
    if model is None:
        raise PayloadValidationError(
            job_type,
            f"unknown job type (expected one of {sorted(PAYLOAD_MODELS)})",
        )
    if not isinstance(payload, dict):
        raise PayloadValidationError(job_type, "payload must be an object")

    data = dict(payload)
    embedded_type = data.pop("type", job_type)
    if embedded_type != job_type:
        raise PayloadValidationError(
            job_type, f"payload type '{embedded_type}' does not match job type"
        )

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadValidationError(
            job_type,
            "schema validation failed",
            errors=[
                {"loc": list(err["loc"]), "msg": err["msg"]}
                for err in e.errors()
            ],
        ) from e

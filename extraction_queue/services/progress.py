"""
Progress Store - Durable per-job snapshots and agent run logs.

Pure storage. Every write lands in a temporary file in the target directory
and is renamed over the previous record, so a concurrent reader sees either
the old or the new value, never a partial one.
"""

import asyncio
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from extraction_queue.config import Settings, get_settings
from extraction_queue.core.errors import PersistenceError
from extraction_queue.schemas.progress import ProgressSnapshot, RunLogEntry

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_run_log_adapter = TypeAdapter(list[RunLogEntry])


def _check_key(key: str) -> str:
    if not _KEY_PATTERN.match(key) or ".." in key:
        raise ValueError(f"Invalid record key: {key!r}")
    return key


def atomic_write_text(path: Path, content: str) -> None:
    """Write `content` to `path` via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class ProgressStore:
    """File-backed key/value store for progress snapshots and run logs."""

    def __init__(self, progress_dir: Path, logs_dir: Path) -> None:
        self.progress_dir = Path(progress_dir)
        self.logs_dir = Path(logs_dir)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ProgressStore":
        settings = settings or get_settings()
        return cls(settings.progress_path, settings.logs_path)

    def snapshot_path(self, job_id: str) -> Path:
        return self.progress_dir / f"{_check_key(job_id)}.json"

    def run_log_path(self, run_id: str) -> Path:
        return self.logs_dir / f"{_check_key(run_id)}.json"

    async def write_snapshot(self, job_id: str, snapshot: ProgressSnapshot) -> None:
        content = snapshot.model_dump_json(by_alias=True, indent=2)
        await self._write(self.snapshot_path(job_id), content, "write_snapshot")

    async def read_snapshot(self, job_id: str) -> ProgressSnapshot | None:
        raw = await self._read(self.snapshot_path(job_id), "read_snapshot")
        if raw is None:
            return None
        try:
            return ProgressSnapshot.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceError("read_snapshot", f"corrupt snapshot for {job_id}") from e

    async def write_run_log(self, run_id: str, entries: list[RunLogEntry]) -> None:
        content = json.dumps(dump_entries(entries), indent=2)
        await self._write(self.run_log_path(run_id), content, "write_run_log")

    async def read_run_log(self, run_id: str) -> list[RunLogEntry] | None:
        raw = await self._read(self.run_log_path(run_id), "read_run_log")
        if raw is None:
            return None
        try:
            return _run_log_adapter.validate_json(raw)
        except ValidationError as e:
            raise PersistenceError("read_run_log", f"corrupt run log {run_id}") from e

    async def delete_snapshot(self, job_id: str) -> bool:
        path = self.snapshot_path(job_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError("delete_snapshot", str(e)) from e
        return True

    async def _write(self, path: Path, content: str, operation: str) -> None:
        try:
            await asyncio.to_thread(atomic_write_text, path, content)
        except OSError as e:
            raise PersistenceError(operation, str(e)) from e

    async def _read(self, path: Path, operation: str) -> str | None:
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(operation, str(e)) from e


def dump_entries(entries: list[RunLogEntry]) -> list[dict[str, Any]]:
    """JSON-ready form of run log entries, as served over the API."""
    return [entry.model_dump(mode="json", by_alias=True) for entry in entries]

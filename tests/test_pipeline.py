import asyncio
import json
import shlex
import sys
import textwrap

import pytest

from extraction_queue.core.errors import PersistenceError
from extraction_queue.models import Job, JobStatus, utcnow
from extraction_queue.pipeline import Pipeline, PipelineExecutor, StepDefinition
from extraction_queue.pipeline.steps import extraction_pipeline
from extraction_queue.services import claim_job, enqueue_job, get_job

EXTRACTION_PAYLOAD = {
    "name": "Landing Page",
    "prompt": "Extract the hero section",
}


async def _noop(ctx):
    await ctx.log("ok")


async def _boom(ctx):
    raise RuntimeError("boom")


def _command(script, *args):
    return " ".join(
        [shlex.quote(sys.executable), shlex.quote(str(script)), *args]
    )


@pytest.fixture
def executor(session_maker, store, settings):
    return PipelineExecutor(session_maker, store, settings)


async def _enqueue_and_claim(db, job_type, payload):
    await enqueue_job(db, job_type, payload)
    return await claim_job(db, "w1")


@pytest.mark.asyncio
async def test_echo_job_runs_to_completion(db, executor, store):
    job = await _enqueue_and_claim(db, "echo", {"message": "hello"})

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.COMPLETED.value
    assert resolved.result["message"] == "hello"
    assert resolved.result["jobId"] == job.id

    snapshot = await store.read_snapshot(job.id)
    assert snapshot.status == "completed"
    assert snapshot.current_step is None
    assert [s.status for s in snapshot.step_progress] == ["completed"]
    assert snapshot.completed_at is not None


@pytest.mark.asyncio
async def test_create_and_delete_file_jobs(db, executor, settings):
    job = await _enqueue_and_claim(
        db, "create_file", {"path": "notes/out.txt", "content": "first"}
    )
    resolved = await executor.execute(job)
    target = settings.storage_path / "notes" / "out.txt"
    assert resolved.status == JobStatus.COMPLETED.value
    assert target.read_text() == "first"

    job = await _enqueue_and_claim(
        db, "create_file", {"path": "notes/out.txt", "content": "second"}
    )
    resolved = await executor.execute(job)
    assert resolved.result["written"] is False
    assert target.read_text() == "first"

    job = await _enqueue_and_claim(db, "delete_file", {"path": "notes/out.txt"})
    resolved = await executor.execute(job)
    assert resolved.result["deleted"] is True
    assert not target.exists()

    job = await _enqueue_and_claim(
        db, "delete_file", {"path": "notes/out.txt", "require_exists": True}
    )
    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.FAILED.value
    assert "File not found" in resolved.last_error


@pytest.mark.asyncio
async def test_failed_step_leaves_later_steps_pending(db, session_maker, store, settings):
    pipeline = (
        extraction_pipeline(settings)
        .with_action("scaffold", _noop)
        .with_action("folders", _noop)
        .with_action("clone", _boom)
    )
    executor = PipelineExecutor(
        session_maker, store, settings, pipelines={"extraction": pipeline}
    )
    job = await _enqueue_and_claim(db, "extraction", EXTRACTION_PAYLOAD)

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.FAILED.value
    assert resolved.last_error == "Step 'clone' failed: boom"

    snapshot = await store.read_snapshot(job.id)
    assert [s.step_id for s in snapshot.step_progress] == [
        "scaffold", "folders", "clone", "templates", "agent",
    ]
    assert [s.status for s in snapshot.step_progress] == [
        "completed", "completed", "error", "pending", "pending",
    ]
    assert snapshot.step("clone").error == "boom"
    assert snapshot.status == "failed"
    assert snapshot.current_step is None
    assert snapshot.running_steps == []


@pytest.mark.asyncio
async def test_step_timeout_fails_job(db, session_maker, store, settings):
    async def _slow(ctx):
        await asyncio.sleep(5)

    pipeline = Pipeline(
        job_type="echo",
        steps=[StepDefinition("slow", "Sleeping", _slow, timeout=0.05)],
    )
    executor = PipelineExecutor(session_maker, store, settings, pipelines={"echo": pipeline})
    job = await _enqueue_and_claim(db, "echo", {"message": "x"})

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.FAILED.value
    assert "timed out" in resolved.last_error
    assert (await store.read_snapshot(job.id)).step("slow").status == "error"


@pytest.mark.asyncio
async def test_persistence_error_propagates_and_leaves_job_claimed(
    db, session_maker, store, settings
):
    async def _store_down(ctx):
        raise PersistenceError("write_snapshot", "disk full")

    pipeline = Pipeline(
        job_type="echo",
        steps=[StepDefinition("write", "Writing", _store_down)],
    )
    executor = PipelineExecutor(session_maker, store, settings, pipelines={"echo": pipeline})
    job = await _enqueue_and_claim(db, "echo", {"message": "x"})

    with pytest.raises(PersistenceError):
        await executor.execute(job)
    assert (await get_job(db, job.id)).status == JobStatus.CLAIMED.value


@pytest.mark.asyncio
async def test_invalid_stored_payload_fails_job(db, executor):
    db.add(Job(type="echo", payload={"wrong": 1}, status="pending", created_at=utcnow()))
    await db.commit()
    job = await claim_job(db, "w1")

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.FAILED.value
    assert "Invalid payload" in resolved.last_error


@pytest.mark.asyncio
async def test_unknown_job_type_fails_job(db, executor, store):
    db.add(Job(type="mystery", payload={}, status="pending", created_at=utcnow()))
    await db.commit()
    job = await claim_job(db, "w1")

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.FAILED.value
    assert "No pipeline registered" in resolved.last_error
    assert (await store.read_snapshot(job.id)).status == "failed"


@pytest.fixture
def extraction_settings(settings, tmp_path):
    """Scaffold and agent commands backed by small Python scripts."""
    scaffold = tmp_path / "scaffold.py"
    scaffold.write_text(textwrap.dedent("""
        import os, sys
        os.makedirs(sys.argv[1])
        print("created " + sys.argv[1])
    """))
    settings.scaffold_command = _command(scaffold, "{app_name}")

    templates = tmp_path / "templates"
    (templates / "lib").mkdir(parents=True)
    (templates / "README.md").write_text("template")
    (templates / "lib" / "util.ts").write_text("export {}")
    settings.template_dir = templates
    return settings


def _agent_script(tmp_path, events, exit_code=0):
    script = tmp_path / "agent.py"
    script.write_text(textwrap.dedent(f"""
        import json, pathlib, sys
        target = pathlib.Path("src/app/extracted/Hero.tsx")
        target.write_text("export const Hero = () => null")
        for event in {events!r}:
            print(json.dumps(event), flush=True)
        print("plain output line")
        sys.exit({exit_code})
    """))
    return _command(script, "{prompt}", "--model", "{model}")


AGENT_EVENTS = [
    {"type": "system", "subtype": "init", "model": "test-model"},
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "Working"}]}},
    {"type": "result", "subtype": "success", "is_error": False, "num_turns": 3, "result": "Done"},
]


@pytest.mark.asyncio
async def test_extraction_end_to_end(db, session_maker, store, extraction_settings, tmp_path):
    extraction_settings.agent_command = _agent_script(tmp_path, AGENT_EVENTS)
    executor = PipelineExecutor(session_maker, store, extraction_settings)
    job = await _enqueue_and_claim(db, "extraction", EXTRACTION_PAYLOAD)

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.COMPLETED.value, resolved.last_error

    result = resolved.result
    app_dir = extraction_settings.apps_path / f"landing-page-{job.id[:8]}"
    assert result["appDir"] == str(app_dir)
    assert result["originUrl"] is None
    assert result["agentModel"] == "test-model"
    assert result["agentTurns"] == 3
    assert sorted(result["extractedFiles"]) == ["Hero.tsx", "README.md", "lib/util.ts"]
    assert (app_dir / "src" / "source").is_dir()

    snapshot = await store.read_snapshot(job.id)
    assert snapshot.status == "completed"
    assert all(s.status == "completed" for s in snapshot.step_progress)
    assert snapshot.agent_status == "completed"
    assert snapshot.agent_run_id == result["agentRunId"]

    entries = await store.read_run_log(result["agentRunId"])
    assert [e.type for e in entries] == ["system", "assistant", "result", "output"]
    assert entries[1].message == "Working"


@pytest.mark.asyncio
async def test_extraction_agent_failure(db, session_maker, store, extraction_settings, tmp_path):
    extraction_settings.agent_command = _agent_script(tmp_path, AGENT_EVENTS[:2], exit_code=2)
    executor = PipelineExecutor(session_maker, store, extraction_settings)
    job = await _enqueue_and_claim(db, "extraction", EXTRACTION_PAYLOAD)

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.FAILED.value
    assert resolved.last_error == "Step 'agent' failed: agent exited with code 2"

    snapshot = await store.read_snapshot(job.id)
    assert snapshot.step("agent").status == "error"
    assert snapshot.agent_status == "failed"
    entries = await store.read_run_log(snapshot.agent_run_id)
    assert len(entries) == 3


@pytest.mark.asyncio
async def test_extraction_retry_reuses_app_dir(db, session_maker, store, extraction_settings, tmp_path):
    extraction_settings.agent_command = _agent_script(tmp_path, AGENT_EVENTS, exit_code=1)
    executor = PipelineExecutor(session_maker, store, extraction_settings)
    job = await _enqueue_and_claim(db, "extraction", EXTRACTION_PAYLOAD)
    assert (await executor.execute(job)).status == JobStatus.FAILED.value

    from extraction_queue.services import retry_job

    await retry_job(db, job.id)
    extraction_settings.agent_command = _agent_script(tmp_path, AGENT_EVENTS)
    job = await claim_job(db, "w2")

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.COMPLETED.value, resolved.last_error
    assert resolved.retry_count == 1


@pytest.mark.asyncio
async def test_missing_template_dir_fails_templates_step(
    db, session_maker, store, extraction_settings, tmp_path
):
    extraction_settings.template_dir = tmp_path / "nowhere"
    executor = PipelineExecutor(session_maker, store, extraction_settings)
    job = await _enqueue_and_claim(db, "extraction", EXTRACTION_PAYLOAD)

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.FAILED.value
    snapshot = await store.read_snapshot(job.id)
    assert [s.status for s in snapshot.step_progress] == [
        "completed", "completed", "completed", "error", "pending",
    ]
    assert json.loads(store.snapshot_path(job.id).read_text())["stepProgress"][3]["stepId"] == "templates"


@pytest.fixture
def slow_git(tmp_path, monkeypatch):
    """A git executable that sleeps, then leaves a marker if it was not killed."""
    from git import Git

    marker = tmp_path / "clone-finished"
    script = tmp_path / "fake-git"
    script.write_text(f"#!{sys.executable}\n" + textwrap.dedent(f"""
        import pathlib, time
        print("Cloning into 'source'...", flush=True)
        time.sleep(1.5)
        pathlib.Path({str(marker)!r}).write_text("done")
    """))
    script.chmod(0o755)
    monkeypatch.setattr(Git, "GIT_PYTHON_GIT_EXECUTABLE", str(script))
    return marker


@pytest.mark.asyncio
async def test_clone_timeout_kills_git(db, session_maker, store, settings, slow_git):
    from extraction_queue.pipeline.steps import clone_source, create_folders

    pipeline = Pipeline(
        job_type="extraction",
        steps=[
            StepDefinition("folders", "Creating folders", create_folders),
            StepDefinition("clone", "Cloning", clone_source, timeout=0.3),
        ],
    )
    executor = PipelineExecutor(
        session_maker, store, settings, pipelines={"extraction": pipeline}
    )
    job = await _enqueue_and_claim(
        db, "extraction", {**EXTRACTION_PAYLOAD, "origin_url": "https://github.com/o/r"}
    )

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.FAILED.value
    assert "timed out" in resolved.last_error

    await asyncio.sleep(2)
    assert not slow_git.exists()


@pytest.mark.asyncio
async def test_step_without_run_paths_fails(db, session_maker, store, settings):
    from extraction_queue.pipeline.steps import create_folders

    pipeline = Pipeline(
        job_type="echo",
        steps=[StepDefinition("folders", "Creating folders", create_folders)],
    )
    executor = PipelineExecutor(session_maker, store, settings, pipelines={"echo": pipeline})
    job = await _enqueue_and_claim(db, "echo", {"message": "x"})

    resolved = await executor.execute(job)
    assert resolved.status == JobStatus.FAILED.value
    assert "run directories were not resolved" in resolved.last_error

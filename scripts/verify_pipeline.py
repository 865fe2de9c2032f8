#!/usr/bin/env python3
"""
Pipeline Verification Script for the Extraction Queue.

Runs against a live API with at least one worker attached:
1. Checks API health
2. Enqueues an extraction (or echo) job
3. Polls the job and its progress snapshot until it finishes
4. Prints step outcomes and the agent run log summary
"""

import argparse
import sys
import time

import requests

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_REPO_URL = "https://github.com/octocat/Hello-World"
POLL_INTERVAL_SECONDS = 5
MAX_POLL_ATTEMPTS = 720  # 1 hour max wait


def check_health(base_url: str) -> bool:
    """Check if the API is healthy."""
    print("\n--- Step 1: Checking API Health ---")
    try:
        response = requests.get(f"{base_url}/health", timeout=10)
    except requests.exceptions.ConnectionError:
        print(f"  ❌ Could not connect to API at {base_url}")
        return False
    if response.status_code != 200:
        print(f"  ❌ API returned status {response.status_code}")
        return False
    print(f"  ✅ API is healthy: {response.json()}")
    return True


def enqueue(base_url: str, job_type: str, payload: dict, priority: int) -> dict | None:
    """Enqueue a job."""
    print(f"\n--- Step 2: Enqueueing {job_type} job ---")
    try:
        response = requests.post(
            f"{base_url}/jobs",
            json={"type": job_type, "payload": payload, "priority": priority},
            timeout=30,
        )
    except requests.exceptions.RequestException as e:
        print(f"  ❌ Request failed: {e}")
        return None
    if response.status_code != 201:
        print(f"  ❌ Enqueue failed with status {response.status_code}: {response.text}")
        return None
    data = response.json()
    print(f"  ✅ Enqueued: job_id={data['job_id']}")
    return data


def poll_job(base_url: str, job_id: str) -> dict | None:
    """Poll the job until it reaches a terminal status."""
    print(f"\n--- Step 3: Polling job_id={job_id} ---")
    last_step = None

    for attempt in range(1, MAX_POLL_ATTEMPTS + 1):
        try:
            job = requests.get(f"{base_url}/jobs/{job_id}", timeout=10).json()
            progress = requests.get(f"{base_url}/jobs/{job_id}/progress", timeout=10)
        except requests.exceptions.RequestException as e:
            print(f"  ⚠️  Request failed: {e}")
            time.sleep(POLL_INTERVAL_SECONDS)
            continue

        if progress.status_code == 200:
            current = progress.json().get("currentStep")
            if current and current != last_step:
                print(f"  ➡️  Running step: {current}")
                last_step = current

        status = job.get("status")
        if status in {"completed", "failed"}:
            print(f"  [{attempt}] Job finished with status {status}")
            return job
        print(f"  [{attempt}/{MAX_POLL_ATTEMPTS}] Status: {status}")
        time.sleep(POLL_INTERVAL_SECONDS)

    print(f"  ❌ Timed out after {MAX_POLL_ATTEMPTS * POLL_INTERVAL_SECONDS} seconds")
    return None


def report_progress(base_url: str, job_id: str) -> None:
    """Print the step outcomes and the agent run log size."""
    print("\n--- Step 4: Progress Report ---")
    response = requests.get(f"{base_url}/jobs/{job_id}/progress", timeout=10)
    if response.status_code != 200:
        print(f"  ⚠️  No progress snapshot: {response.status_code}")
        return
    snapshot = response.json()
    for step in snapshot.get("stepProgress", []):
        marker = {"completed": "✅", "error": "❌"}.get(step["status"], "⏸️ ")
        error = f" ({step['error']})" if step.get("error") else ""
        print(f"  {marker} {step['stepId']}: {step['status']}{error}")

    run_id = snapshot.get("agentRunId")
    if run_id:
        log = requests.get(f"{base_url}/runs/{run_id}/log", timeout=10)
        if log.status_code == 200:
            print(f"  Agent run {run_id}: {len(log.json())} log entries")


def main():
    parser = argparse.ArgumentParser(description="Verify the extraction pipeline")
    parser.add_argument(
        "--repo-url",
        default=DEFAULT_REPO_URL,
        help=f"GitHub repository to extract from (default: {DEFAULT_REPO_URL})",
    )
    parser.add_argument("--name", default="hello-world", help="App name")
    parser.add_argument(
        "--prompt",
        default="Extract the landing page into a reusable component.",
        help="Prompt passed to the coding agent",
    )
    parser.add_argument(
        "--echo",
        action="store_true",
        help="Enqueue an echo job instead (no scaffolding or agent)",
    )
    parser.add_argument("--priority", type=int, default=0)
    parser.add_argument(
        "--base-url",
        default=DEFAULT_BASE_URL,
        help=f"API base URL (default: {DEFAULT_BASE_URL})",
    )
    args = parser.parse_args()
    base_url = args.base_url

    print("=" * 60)
    print("  Extraction Queue - Pipeline Verification")
    print("=" * 60)

    if not check_health(base_url):
        print("\n❌ VERIFICATION FAILED: API is not healthy")
        sys.exit(1)

    if args.echo:
        job = enqueue(base_url, "echo", {"message": "verify"}, args.priority)
    else:
        job = enqueue(
            base_url,
            "extraction",
            {"name": args.name, "prompt": args.prompt, "origin_url": args.repo_url},
            args.priority,
        )
    if not job:
        print("\n❌ VERIFICATION FAILED: Could not enqueue job")
        sys.exit(1)

    job_id = job["job_id"]
    final = poll_job(base_url, job_id)
    report_progress(base_url, job_id)

    if not final or final["status"] != "completed":
        error = final.get("last_error") if final else "timed out"
        print(f"\n❌ VERIFICATION FAILED: {error}")
        sys.exit(1)

    print("\n" + "=" * 60)
    print("  ✅ PIPELINE VERIFICATION COMPLETE")
    print("=" * 60)
    print(f"\n  Job ID: {job_id}")
    print(f"  Result: {final.get('result')}")


if __name__ == "__main__":
    main()

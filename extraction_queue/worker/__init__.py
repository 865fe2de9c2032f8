"""Worker package - Background job processing."""

from extraction_queue.worker.runner import Worker, make_worker_id

__all__ = ["Worker", "make_worker_id"]

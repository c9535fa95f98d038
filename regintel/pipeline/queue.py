"""
In-process job queue with a fixed-size worker pool per job type.

Usage:

    jobs = JobQueue()
    jobs.register("scan", handle_scan, concurrency=2)
    jobs.register("merge", handle_merge, concurrency=1)
    jobs.start()
    job_id = jobs.enqueue("scan", {"run_id": run.id, "jurisdiction": "EU"})
    jobs.join()

Handlers are called as ``handler(payload, cancel_event)``. A handler that returns
marks the job ``completed``; one that raises marks it ``failed`` with the error text.
Cancelling a job sets its event; the handler decides where to stop. Finished jobs are
kept for status lookups up to ``max_finished``; the oldest are evicted first.
"""

import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from .models import new_id, utc_now_iso

logger = logging.getLogger(__name__)

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

DEFAULT_MAX_FINISHED = 1000

Handler = Callable[[Dict[str, Any], threading.Event], Any]

_STOP = object()


class UnknownJobType(Exception):
    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")


@dataclass
class Job:
    id: str
    job_type: str
    payload: Dict[str, Any]
    status: str = JOB_QUEUED
    result: Any = None
    error: Optional[str] = None
    enqueued_at: str = field(default_factory=utc_now_iso)
    finished_at: Optional[str] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "status": self.status,
            "error": self.error,
            "enqueued_at": self.enqueued_at,
            "finished_at": self.finished_at,
            "cancelled": self.cancel_event.is_set(),
        }


@dataclass
class _Lane:
    handler: Handler
    concurrency: int
    pending: "queue.Queue" = field(default_factory=queue.Queue)
    threads: List[threading.Thread] = field(default_factory=list)


class JobQueue:
    """Job registry plus one worker pool per registered job type."""

    def __init__(self, max_finished: int = DEFAULT_MAX_FINISHED):
        self.max_finished = max(0, int(max_finished))
        self._lanes: Dict[str, _Lane] = {}
        self._jobs: Dict[str, Job] = {}
        self._finished: Deque[str] = deque()
        self._lock = threading.Lock()
        self._started = False

    def register(self, job_type: str, handler: Handler, concurrency: int = 1) -> None:
        if self._started:
            raise RuntimeError("Cannot register job types after start()")
        self._lanes[job_type] = _Lane(handler=handler, concurrency=max(1, int(concurrency)))

    def enqueue(self, job_type: str, payload: Dict[str, Any]) -> str:
        lane = self._lanes.get(job_type)
        if lane is None:
            raise UnknownJobType(job_type)
        job = Job(id=new_id(), job_type=job_type, payload=dict(payload))
        with self._lock:
            self._jobs[job.id] = job
        lane.pending.put(job)
        logger.info(f"Enqueued {job_type} job {job.id}")
        return job.id

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        job = self.get(job_id)
        if job is None or job.status in (JOB_COMPLETED, JOB_FAILED):
            return False
        job.cancel_event.set()
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for job_type, lane in self._lanes.items():
            for index in range(lane.concurrency):
                thread = threading.Thread(
                    target=self._work,
                    args=(job_type, lane),
                    name=f"{job_type}-worker-{index + 1}",
                    daemon=True,
                )
                thread.start()
                lane.threads.append(thread)
        logger.info(
            "Job queue started: "
            + ", ".join(f"{t}={l.concurrency}" for t, l in self._lanes.items())
        )

    def join(self) -> None:
        """Block until every enqueued job has finished."""
        for lane in self._lanes.values():
            lane.pending.join()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Let queued jobs drain, then shut the worker threads down."""
        if not self._started:
            return
        for lane in self._lanes.values():
            for _ in lane.threads:
                lane.pending.put(_STOP)
        for lane in self._lanes.values():
            for thread in lane.threads:
                thread.join(timeout)
            lane.threads.clear()
        self._started = False
        logger.info("Job queue stopped")

    def _work(self, job_type: str, lane: _Lane) -> None:
        while True:
            job = lane.pending.get()
            try:
                if job is _STOP:
                    return
                self._run(job, lane.handler)
            finally:
                lane.pending.task_done()

    def _run(self, job: Job, handler: Handler) -> None:
        job.status = JOB_RUNNING
        try:
            job.result = handler(job.payload, job.cancel_event)
            job.status = JOB_COMPLETED
            logger.info(f"{job.job_type} job {job.id} completed")
        except Exception as e:
            job.status = JOB_FAILED
            job.error = str(e)
            logger.exception(f"{job.job_type} job {job.id} failed")
        finally:
            job.finished_at = utc_now_iso()
            self._retire(job)

    def _retire(self, job: Job) -> None:
        with self._lock:
            self._finished.append(job.id)
            while len(self._finished) > self.max_finished:
                self._jobs.pop(self._finished.popleft(), None)

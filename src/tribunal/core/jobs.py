"""In-memory job queue for document processing.

At most one job is active at a time; waiting jobs run in FIFO order. Job
history lives in process memory only and is lost on restart.
"""

import dataclasses
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .errors import NotFoundError
from .logging_config import get_audit_logger, log_job_event
from .models import Job, JobKind, JobStatus, OcrStatus, QueueStats, utcnow
from .pipeline import IngestionPipeline

logger = get_audit_logger("job_queue")


class JobQueue(ABC):
    """Accepts processing requests and reports their progress."""

    @abstractmethod
    def enqueue(self, document_id: str, kind: JobKind = JobKind.PROCESS) -> Job:
        """Queue a job. Raises NotFoundError for an unknown document."""

    @abstractmethod
    def get_job(self, job_id: str) -> Job:
        ...

    @abstractmethod
    def list_jobs(self, limit: int = 50) -> List[Job]:
        """Most recent jobs first."""

    @abstractmethod
    def get_stats(self) -> QueueStats:
        ...

    @abstractmethod
    def clear_finished(self) -> int:
        """Drop completed and failed jobs from history; returns how many."""


class BaseJobQueue(JobQueue):
    """Job bookkeeping shared by the inline and background queues."""

    def __init__(self, pipeline: IngestionPipeline):
        self.pipeline = pipeline
        self._jobs: Dict[str, Job] = {}
        self._counter = 0
        self._lock = threading.Lock()
        # Held for the whole of a run: only one job can be active.
        self._active_lock = threading.Lock()
        self._active_document_id: Optional[str] = None

    def _create_job(self, document_id: str, kind: JobKind) -> Job:
        document = self.pipeline.get_document(document_id)
        with self._lock:
            self._counter += 1
            job = Job(
                id=f"job_{self._counter}_{int(time.time() * 1000)}",
                document_id=document.id,
                case_id=document.case_id,
                file_name=document.file_name,
                kind=kind,
            )
            self._jobs[job.id] = job
        log_job_event(logger, "job_queued", job.id, job.document_id, kind.value)
        return job

    def _execute(self, job: Job) -> None:
        with self._active_lock:
            with self._lock:
                job.status = JobStatus.ACTIVE
                job.started_at = utcnow()
                job.progress = 10
                self._active_document_id = job.document_id
            log_job_event(logger, "job_started", job.id, job.document_id, job.kind.value)

            try:
                if job.kind == JobKind.REPROCESS:
                    result = self.pipeline.reprocess(job.document_id)
                else:
                    result = self.pipeline.process_document(job.document_id)
            except Exception as e:
                with self._lock:
                    job.status = JobStatus.FAILED
                    job.error = str(e)
                    job.completed_at = utcnow()
                    self._active_document_id = None
                logger.error("job_failed", job_id=job.id, document_id=job.document_id, error=str(e))
                return

            with self._lock:
                job.result = result
                job.progress = 100
                job.completed_at = utcnow()
                if result.status == OcrStatus.FAILED:
                    job.status = JobStatus.FAILED
                    job.error = result.error
                else:
                    job.status = JobStatus.COMPLETED
                self._active_document_id = None
            log_job_event(logger, "job_finished", job.id, job.document_id, job.kind.value,
                          status=job.status.value, document_status=result.status.value)

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job not found: {job_id}")
            return dataclasses.replace(job)

    def list_jobs(self, limit: int = 50) -> List[Job]:
        with self._lock:
            jobs = list(self._jobs.values())
        return [dataclasses.replace(job) for job in reversed(jobs)][:limit]

    def get_stats(self) -> QueueStats:
        with self._lock:
            stats = QueueStats(total=len(self._jobs), active_document_id=self._active_document_id)
            for job in self._jobs.values():
                if job.status == JobStatus.WAITING:
                    stats.waiting += 1
                elif job.status == JobStatus.ACTIVE:
                    stats.active += 1
                elif job.status == JobStatus.COMPLETED:
                    stats.completed += 1
                else:
                    stats.failed += 1
        return stats

    def clear_finished(self) -> int:
        with self._lock:
            finished = [job_id for job_id, job in self._jobs.items() if job.finished]
            for job_id in finished:
                del self._jobs[job_id]
        logger.info("jobs_cleared", count=len(finished))
        return len(finished)


class InlineJobQueue(BaseJobQueue):
    """Runs each job synchronously inside ``enqueue``."""

    def enqueue(self, document_id: str, kind: JobKind = JobKind.PROCESS) -> Job:
        job = self._create_job(document_id, kind)
        self._execute(job)
        return self.get_job(job.id)


class BackgroundJobQueue(BaseJobQueue):
    """A single daemon worker thread draining a FIFO queue."""

    def __init__(self, pipeline: IngestionPipeline, autostart: bool = True):
        super().__init__(pipeline)
        self.autostart = autostart
        self._pending: "queue.Queue[Optional[str]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._outstanding = 0
        self._idle = threading.Condition()

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._work, name="tribunal-ingest-worker", daemon=True)
        self._worker.start()
        logger.info("worker_started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Let the worker finish queued jobs, then stop it."""
        if self._worker is None:
            return
        self._pending.put(None)
        self._worker.join(timeout)
        self._worker = None
        logger.info("worker_stopped")

    def enqueue(self, document_id: str, kind: JobKind = JobKind.PROCESS) -> Job:
        job = self._create_job(document_id, kind)
        with self._idle:
            self._outstanding += 1
        self._pending.put(job.id)
        if self.autostart:
            self.start()
        return self.get_job(job.id)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is waiting or active. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout)

    def _work(self) -> None:
        while True:
            job_id = self._pending.get()
            if job_id is None:
                self._pending.task_done()
                return
            try:
                with self._lock:
                    job = self._jobs.get(job_id)
                if job is not None:
                    self._execute(job)
            finally:
                self._pending.task_done()
                with self._idle:
                    self._outstanding -= 1
                    self._idle.notify_all()

"""Job management service for background enhancement jobs."""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import EnhancementCancelled, EnhancementError
from ..utils.pixel_buffer import extension_for
from .enhancement_service import EnhancementResult, EnhancementService

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Enhancement job status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class EnhancementJob:
    """An enhancement job working on an in-memory input image."""
    job_id: str
    source: bytes = field(repr=False)
    model_id: str = ""
    scale: int = 4
    output_path: Optional[str] = None
    output_format: Optional[str] = None
    quality: Optional[int] = None

    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    stage: str = "Queued"
    result: Optional[EnhancementResult] = None
    error: Optional[Dict[str, Any]] = None

    _cancel_flag: threading.Event = field(default_factory=threading.Event)

    def run(self, service: EnhancementService):
        """Execute the job with the given service."""
        if self._cancel_flag.is_set():
            self.status = JobStatus.CANCELLED
            return

        def progress_callback(fraction, stage):
            self.progress = fraction
            self.stage = stage

        try:
            logger.info(f"Starting enhancement job {self.job_id}")
            self.status = JobStatus.RUNNING
            self.result = service.enhance(
                self.source, self.model_id, self.scale,
                destination=self.output_path,
                progress_callback=progress_callback,
                cancel_event=self._cancel_flag,
                output_format=self.output_format,
                quality=self.quality,
            )
            # the output lives at output_path; keep only the metrics
            self.result.image = None
            self.status = JobStatus.COMPLETED
            logger.info(f"Enhancement job {self.job_id} completed ({self.result.method})")

        except EnhancementCancelled:
            self.status = JobStatus.CANCELLED
            self.stage = "Cancelled"
            logger.info(f"Enhancement job {self.job_id} cancelled")
        except EnhancementError as e:
            logger.error(f"Enhancement job {self.job_id} failed: {e}")
            self.status = JobStatus.FAILED
            self.error = e.to_dict()
        except ValueError as e:
            logger.error(f"Enhancement job {self.job_id} rejected: {e}")
            self.status = JobStatus.FAILED
            self.error = {"kind": "INVALID_ARGUMENT", "message": str(e)}
        except Exception as e:
            logger.exception(f"Enhancement job {self.job_id} crashed: {e}")
            self.status = JobStatus.FAILED
            self.error = {"kind": "INTERNAL_ERROR", "message": str(e)}
        finally:
            # input bytes are no longer needed once the job has finished
            self.source = b""

    def cancel(self):
        """Request cancellation; takes effect before the next tile."""
        self._cancel_flag.set()
        if self.status == JobStatus.PENDING:
            self.status = JobStatus.CANCELLED

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def get_status(self) -> Dict[str, Any]:
        """Get job status as dictionary."""
        result = {
            "job_id": self.job_id,
            "status": self.status.value,
            "model_id": self.model_id,
            "scale": self.scale,
            "progress": round(self.progress, 4),
            "stage": self.stage,
        }

        if self.status == JobStatus.COMPLETED and self.result is not None:
            result["result"] = self.result.to_dict()
        elif self.status == JobStatus.FAILED:
            result["error"] = self.error

        return result


class JobManager:
    """Runs enhancement jobs on a thread pool."""

    def __init__(self, service: EnhancementService, max_workers: int = 1,
                 output_dir: Optional[str] = None, max_finished_jobs: int = 100):
        self.service = service
        self.output_dir = Path(output_dir or service.settings.output_dir)
        self.max_finished_jobs = max_finished_jobs
        self._jobs: Dict[str, EnhancementJob] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        logger.info(f"JobManager initialized with {max_workers} workers")

    def _prune(self):
        """Forget the oldest finished jobs beyond max_finished_jobs, removing their outputs."""
        with self._lock:
            finished = [job for job in self._jobs.values() if job.finished]
            stale = finished[:max(len(finished) - self.max_finished_jobs, 0)]
            for job in stale:
                del self._jobs[job.job_id]
                self._futures.pop(job.job_id, None)

        for job in stale:
            if job.output_path:
                try:
                    Path(job.output_path).unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"Could not remove output of job {job.job_id}: {e}")
            logger.debug(f"Pruned finished job {job.job_id}")

    def submit(self, source: bytes, model_id: str, scale: int,
               output_format: Optional[str] = None,
               quality: Optional[int] = None) -> EnhancementJob:
        """Create a job and queue it for execution."""
        job_id = str(uuid.uuid4())
        fmt = output_format or self.service.settings.output_format
        output_path = self.output_dir / f"{job_id}{extension_for(fmt)}"

        job = EnhancementJob(
            job_id=job_id,
            source=source,
            model_id=model_id,
            scale=scale,
            output_path=str(output_path),
            output_format=fmt,
            quality=quality,
        )
        self._prune()
        with self._lock:
            self._jobs[job_id] = job
            self._futures[job_id] = self._executor.submit(job.run, self.service)
        logger.info(f"Created enhancement job: {job_id} ({model_id} x{scale})")
        return job

    def get_job(self, job_id: str) -> Optional[EnhancementJob]:
        """Get a job by ID."""
        return self._jobs.get(job_id)

    def list_jobs(self) -> List[EnhancementJob]:
        """List all jobs."""
        with self._lock:
            return list(self._jobs.values())

    def cancel_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.cancel()
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> EnhancementJob:
        """Block until a job finishes (used by tests)."""
        self._futures[job_id].result(timeout=timeout)
        return self._jobs[job_id]

    def shutdown(self):
        """Cancel outstanding jobs and stop the pool."""
        logger.info("Shutting down JobManager")
        for job in self.list_jobs():
            if not job.finished:
                job.cancel()
        self._executor.shutdown(wait=False)

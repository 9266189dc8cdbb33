"""
Batch Scheduler
===============
Drives a fixed set of job records from pending to a terminal status under a
bounded concurrency budget.

- FIFO admission: pending jobs are admitted in the order they were queued;
  a retried job goes to the back of the queue
- Pause is a batch-level gate: it stops new admissions, in-flight calls
  run to completion
- Every completion re-runs admission directly, so freed slots are
  backfilled without polling
- Credits are debited once per completed job, after the result is stored;
  a failed debit becomes a reconciliation alert, never a job failure

Admission and all state transitions run on the event loop. ``_admit`` has
no await between counting in-flight jobs and admitting new ones, which
makes it the critical section that keeps concurrent completions from
over-admitting.
"""

import asyncio
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Sequence

from ..logging_config import get_logger
from .credit_estimator import estimate_credits
from .job_record import JobRecord, JobStatus
from .upscale_client import (
    SUPPORTED_SCALES,
    ErrorCategory,
    InvalidInputError,
    SourceImage,
    UpscaleError,
    UpscaleProgress,
)

logger = get_logger("scheduler")

RECONCILIATION_MESSAGE = "Image was upscaled but failed to record usage. Please contact support."

BatchListener = Callable[[str, dict], None]


class BatchStateError(Exception):
    """Raised when a control is used in a state that does not allow it."""


class JobNotFoundError(LookupError):
    """Raised when a job id is not part of the batch."""


def safe_error_message(e: Exception, fallback: str = "Processing interrupted") -> str:
    """Best available message for an unexpected exception."""
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


def coarsen_progress(percent: int) -> int:
    """Round to the nearest 10% to bound update frequency."""
    return min(100, int(percent / 10 + 0.5) * 10)


class BatchScheduler:
    """Owns one batch of job records and schedules their upscale calls."""

    def __init__(
        self,
        user_id: str,
        client,
        ledger,
        scale: int = 2,
        concurrency: int = 2,
        max_concurrency: int = 3,
        max_images: int = 10,
        output_format: str = "png",
        estimator: Callable[[bytes, int], int] = estimate_credits,
        batch_id: Optional[str] = None,
    ):
        if scale not in SUPPORTED_SCALES:
            raise ValueError(f"Unsupported scale {scale}")
        if not 1 <= concurrency <= max_concurrency:
            raise ValueError(f"Concurrency must be between 1 and {max_concurrency}")

        self.id = batch_id or uuid.uuid4().hex
        self.user_id = user_id
        self.client = client
        self.ledger = ledger
        self.scale = scale
        self.concurrency = concurrency
        self.max_concurrency = max_concurrency
        self.max_images = max_images
        self.output_format = output_format
        self.estimator = estimator
        self.created_at = datetime.now(timezone.utc)

        self.jobs: List[JobRecord] = []
        self.paused = False
        self.running = False
        self.runs = 0
        self.total_used_credits = 0
        self.alerts: List[dict] = []

        self._queue: Deque[str] = deque()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._listeners: List[BatchListener] = []
        self._done: Optional[asyncio.Event] = None
        self._generation = 0

    # ============================================================
    # OBSERVERS
    # ============================================================

    def subscribe(self, listener: BatchListener) -> Callable[[], None]:
        """Register ``listener(event_type, payload)``; returns an unsubscribe hook."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: str, payload: dict):
        for listener in list(self._listeners):
            try:
                listener(event_type, payload)
            except Exception as e:
                logger.error("listener_failed", error=e, batch_id=self.id, event=event_type)

    def _emit_job(self, job: JobRecord, message: Optional[str] = None):
        payload = {
            "batch_id": self.id,
            "job": job.to_dict(self.id, self.paused),
            "counts": self.counts(),
        }
        if message:
            payload["message"] = message
        self._emit("job.updated", payload)

    def _emit_batch(self):
        self._emit("batch.updated", self.summary())

    def _alert(self, kind: str, message: str, job: Optional[JobRecord] = None, detail: Optional[str] = None):
        job_id = job.id if job else None
        if any(a["type"] == kind and a["job_id"] == job_id and a["run"] == self.runs for a in self.alerts):
            return
        alert = {
            "type": kind,
            "message": message,
            "job_id": job_id,
            "detail": detail,
            "run": self.runs,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.alerts.append(alert)
        self._emit("batch.alert", {"batch_id": self.id, "alert": alert})

    # ============================================================
    # SUBMISSION AND SETTINGS
    # ============================================================

    def add_images(self, images: Sequence[SourceImage]) -> List[JobRecord]:
        """Create a pending job per image; invalid images fail immediately."""
        if self.running:
            raise BatchStateError("Cannot add images while the batch is running")
        if len(self.jobs) + len(images) > self.max_images:
            raise BatchStateError(f"A batch holds at most {self.max_images} images")

        created = []
        for image in images:
            job = JobRecord(image, self.scale, self.estimator(image.data, self.scale))
            try:
                self.client.validate(image, self.scale, self.output_format)
            except InvalidInputError as e:
                job.fail(e.user_message, e.category)
                logger.info("job_rejected", batch_id=self.id, job_id=job.id, reason=e.user_message)
            else:
                self._queue.append(job.id)
            self.jobs.append(job)
            created.append(job)

        logger.info("images_added", batch_id=self.id, count=len(created), total=len(self.jobs))
        self._emit_batch()
        return created

    def set_scale(self, scale: int):
        """Apply a new scale to jobs that have not started (pending or failed)."""
        if scale not in SUPPORTED_SCALES:
            raise ValueError(f"Unsupported scale {scale}. Choose one of {list(SUPPORTED_SCALES)}")
        self.scale = scale
        for job in self.jobs:
            if job.status in (JobStatus.PENDING, JobStatus.FAILED):
                job.scale = scale
                job.estimated_credits = self.estimator(job.source.data, scale)
        self._emit_batch()

    def set_concurrency(self, concurrency: int):
        if self.running:
            raise BatchStateError("Cannot change concurrency while the batch is running")
        if not 1 <= concurrency <= self.max_concurrency:
            raise ValueError(f"Concurrency must be between 1 and {self.max_concurrency}")
        self.concurrency = concurrency
        self._emit_batch()

    def remove_item(self, job_id: str):
        """Remove one job and release its data (only while the batch is idle)."""
        job = self.get_job(job_id)
        if self.running:
            raise BatchStateError("Cannot remove images while the batch is running")
        self.jobs.remove(job)
        if job.id in self._queue:
            self._queue.remove(job.id)
        job.discard()
        logger.info("job_removed", batch_id=self.id, job_id=job_id)
        self._emit_batch()

    # ============================================================
    # CONTROLS
    # ============================================================

    def start(self):
        """Begin a run over all pending jobs."""
        if self.running:
            raise BatchStateError("Batch is already running")
        if not self._queue:
            raise BatchStateError("No pending images to process")

        self.running = True
        self.paused = False
        self.runs += 1
        self._done = asyncio.Event()
        logger.info(
            "batch_started",
            batch_id=self.id,
            run=self.runs,
            pending=len(self._queue),
            concurrency=self.concurrency,
        )
        self._emit_batch()
        self._admit()

    def pause(self):
        if not self.running:
            raise BatchStateError("Batch is not running")
        if self.paused:
            return
        self.paused = True
        logger.info("batch_paused", batch_id=self.id, counts=self.counts())
        self._emit_batch()

    def resume(self):
        if not self.paused:
            raise BatchStateError("Batch is not paused")
        self.paused = False
        logger.info("batch_resumed", batch_id=self.id, counts=self.counts())
        self._emit_batch()
        self._admit()
        self._check_complete()

    def retry_failed(self) -> int:
        """Requeue failed jobs at the back of the FIFO queue."""
        retried = 0
        for job in self.jobs:
            if job.status != JobStatus.FAILED:
                continue
            if job.error_category == ErrorCategory.INVALID_INPUT:
                try:
                    self.client.validate(job.source, job.scale, self.output_format)
                except InvalidInputError:
                    continue
            job.retry()
            self._queue.append(job.id)
            retried += 1
            self._emit_job(job)

        logger.info("failed_jobs_retried", batch_id=self.id, count=retried)
        if retried:
            self._admit()
        return retried

    def clear(self):
        """Cancel in-flight calls and discard every record."""
        self._generation += 1
        for task in self._tasks.values():
            task.cancel()
        self._tasks = {}
        for job in self.jobs:
            job.discard()
        self.jobs = []
        self._queue.clear()
        self.running = False
        self.paused = False
        if self._done is not None:
            self._done.set()
        logger.info("batch_cleared", batch_id=self.id)

    async def wait_complete(self, timeout: Optional[float] = None) -> List[JobRecord]:
        """Wait for the current run to finish and return the final records."""
        if self._done is None:
            raise BatchStateError("Batch has not been started")
        await asyncio.wait_for(self._done.wait(), timeout)
        return list(self.jobs)

    # ============================================================
    # SCHEDULING
    # ============================================================

    def _admit(self):
        if not self.running or self.paused:
            return

        inflight = sum(1 for job in self.jobs if job.status == JobStatus.PROCESSING)
        slots = self.concurrency - inflight
        jobs = {job.id: job for job in self.jobs}

        while slots > 0 and self._queue:
            job = jobs[self._queue.popleft()]
            job.admit()
            slots -= 1
            self._tasks[job.id] = asyncio.create_task(self._run_job(job, self._generation))
            logger.info("job_admitted", batch_id=self.id, job_id=job.id, inflight=self.concurrency - slots)
            self._emit_job(job)

    async def _run_job(self, job: JobRecord, generation: int):
        def on_progress(event: UpscaleProgress):
            if generation == self._generation and job.advance(coarsen_progress(event.percent)):
                self._emit_job(job, event.message)

        try:
            result = await self.client.upscale(
                job.source,
                job.scale,
                self.output_format,
                on_progress=on_progress,
            )
        except asyncio.CancelledError:
            raise
        except UpscaleError as e:
            self._fail(job, generation, e.user_message, e.category)
            if e.category == ErrorCategory.UNAUTHORIZED and generation == self._generation:
                self._alert("unauthorized", e.user_message, job)
        except Exception as e:
            logger.error("job_crashed", error=e, batch_id=self.id, job_id=job.id)
            self._fail(job, generation, safe_error_message(e), ErrorCategory.UNKNOWN)
        else:
            if generation == self._generation:
                job.complete(result)
                logger.info("job_completed", batch_id=self.id, job_id=job.id, scale=job.scale)
                self._emit_job(job)
                # The slot is free as soon as the result is stored
                self._admit()
                await self._debit(job)
        finally:
            if generation == self._generation:
                self._tasks.pop(job.id, None)
                self._admit()
                self._check_complete()

    def _fail(self, job: JobRecord, generation: int, message: str, category: ErrorCategory):
        if generation != self._generation:
            return
        job.fail(message, category)
        logger.warning("job_failed", batch_id=self.id, job_id=job.id, category=category.value, error=message)
        self._emit_job(job)

    async def _debit(self, job: JobRecord):
        amount = job.estimated_credits
        description = (
            f"Used {amount} credit{'s' if amount != 1 else ''} for upscaling "
            f"{job.source.filename} ({job.scale}x)"
        )
        reference = f"{self.id}:{job.id}"
        try:
            if asyncio.iscoroutinefunction(self.ledger.debit):
                await self.ledger.debit(self.user_id, amount, description, reference)
            else:
                await asyncio.to_thread(self.ledger.debit, self.user_id, amount, description, reference)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.ledger_warning = RECONCILIATION_MESSAGE
            logger.error("debit_failed", error=e, batch_id=self.id, job_id=job.id, amount=amount)
            self._alert("reconciliation", RECONCILIATION_MESSAGE, job, detail=safe_error_message(e))
            self._emit_job(job)
        else:
            self.total_used_credits += amount

    def _check_complete(self):
        if not self.running or self._tasks or self._queue:
            return
        if any(job.status == JobStatus.PROCESSING for job in self.jobs):
            return

        self.running = False
        self.paused = False
        snapshot = self.snapshot()
        logger.info("batch_completed", batch_id=self.id, run=self.runs, counts=snapshot["counts"])
        self._emit("batch.completed", snapshot)
        self._done.set()

    # ============================================================
    # READ MODELS
    # ============================================================

    def get_job(self, job_id: str) -> JobRecord:
        for job in self.jobs:
            if job.id == job_id:
                return job
        raise JobNotFoundError(job_id)

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in (
            JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED,
        )}
        for job in self.jobs:
            counts[job.status.value] += 1
        counts["total"] = len(self.jobs)
        return counts

    def projected_credits(self) -> int:
        """Estimated cost of every job still waiting to run."""
        return sum(job.estimated_credits for job in self.jobs if job.status == JobStatus.PENDING)

    @property
    def total_estimated_credits(self) -> int:
        return sum(job.estimated_credits for job in self.jobs)

    @property
    def state(self) -> str:
        if self.running:
            return "paused" if self.paused else "running"
        if self.runs and not self._queue:
            return "completed"
        return "idle"

    def summary(self) -> dict:
        return {
            "id": self.id,
            "state": self.state,
            "paused": self.paused,
            "scale": self.scale,
            "concurrency": self.concurrency,
            "output_format": self.output_format,
            "runs": self.runs,
            "counts": self.counts(),
            "total_estimated_credits": self.total_estimated_credits,
            "projected_credits": self.projected_credits(),
            "total_used_credits": self.total_used_credits,
            "created_at": self.created_at.isoformat(),
        }

    def snapshot(self) -> dict:
        data = self.summary()
        data["alerts"] = list(self.alerts)
        data["jobs"] = [job.to_dict(self.id, self.paused) for job in self.jobs]
        return data

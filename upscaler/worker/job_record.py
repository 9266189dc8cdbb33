"""
Per-image job record.

A job's lifecycle state is a tagged variant, so a result can only exist on a
completed job and an error only on a failed one:

    Pending | Processing(progress) | Completed(result) | Failed(error)

Only the batch scheduler moves a record between states.
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .upscale_client import ErrorCategory, SourceImage, UpscaleResult


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"  # reported for pending jobs while the batch gate is closed


@dataclass(frozen=True)
class Pending:
    status = JobStatus.PENDING


@dataclass(frozen=True)
class Processing:
    progress: int = 0
    status = JobStatus.PROCESSING


@dataclass(frozen=True)
class Completed:
    result: UpscaleResult
    status = JobStatus.COMPLETED


@dataclass(frozen=True)
class Failed:
    error: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    status = JobStatus.FAILED


JobState = Union[Pending, Processing, Completed, Failed]


class InvalidTransition(Exception):
    """Raised when a state change is not allowed from the current state."""


class JobRecord:
    """One submitted image and its tracked lifecycle."""

    def __init__(self, source: SourceImage, scale: int, estimated_credits: int,
                 job_id: Optional[str] = None):
        self.id = job_id or uuid.uuid4().hex[:12]
        self.source = source
        self.scale = scale
        self.estimated_credits = estimated_credits
        self.state: JobState = Pending()
        self.ledger_warning: Optional[str] = None

    # -- derived views -------------------------------------------------

    @property
    def status(self) -> JobStatus:
        return self.state.status

    @property
    def progress(self) -> int:
        if isinstance(self.state, Processing):
            return self.state.progress
        if isinstance(self.state, Completed):
            return 100
        return 0

    @property
    def result(self) -> Optional[UpscaleResult]:
        return self.state.result if isinstance(self.state, Completed) else None

    @property
    def error(self) -> Optional[str]:
        return self.state.error if isinstance(self.state, Failed) else None

    @property
    def error_category(self) -> Optional[ErrorCategory]:
        return self.state.category if isinstance(self.state, Failed) else None

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.state, (Completed, Failed))

    # -- transitions ---------------------------------------------------

    def admit(self):
        if not isinstance(self.state, Pending):
            raise InvalidTransition(f"Cannot admit job in state {self.status.value}")
        self.state = Processing(progress=0)

    def advance(self, progress: int) -> bool:
        """Raise progress; returns True when the stored value changed."""
        if not isinstance(self.state, Processing):
            return False
        progress = max(0, min(100, progress))
        if progress <= self.state.progress:
            return False
        self.state = Processing(progress=progress)
        return True

    def complete(self, result: UpscaleResult):
        if not isinstance(self.state, Processing):
            raise InvalidTransition(f"Cannot complete job in state {self.status.value}")
        self.state = Completed(result=result)

    def fail(self, error: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        if not isinstance(self.state, (Pending, Processing)):
            raise InvalidTransition(f"Cannot fail job in state {self.status.value}")
        self.state = Failed(error=error, category=category)

    def retry(self):
        if not isinstance(self.state, Failed):
            raise InvalidTransition(f"Cannot retry job in state {self.status.value}")
        self.state = Pending()

    def discard(self):
        """Drop owned image data; the record must not be used afterwards."""
        if isinstance(self.state, Completed):
            self.state.result.release()
        self.source.release()

    # -- serialization -------------------------------------------------

    def to_dict(self, batch_id: str, paused: bool = False) -> dict:
        status = self.status
        if paused and status == JobStatus.PENDING:
            status = JobStatus.PAUSED
        base = f"/api/batches/{batch_id}/jobs/{self.id}"
        data = {
            "id": self.id,
            "filename": self.source.filename,
            "content_type": self.source.content_type,
            "size": self.source.size,
            "source_url": f"{base}/source",
            "scale": self.scale,
            "status": status.value,
            "progress": self.progress,
            "estimated_credits": self.estimated_credits,
            "result_url": None,
            "result_content_type": None,
            "error": None,
            "error_category": None,
            "ledger_warning": self.ledger_warning,
        }
        if isinstance(self.state, Completed):
            data["result_url"] = f"{base}/result"
            data["result_content_type"] = self.state.result.content_type
        elif isinstance(self.state, Failed):
            data["error"] = self.state.error
            data["error_category"] = self.state.category.value
        return data

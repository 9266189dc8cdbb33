"""
Batch routes: submit images, control the run, stream updates and fetch results.
"""
import io
import zipfile
from contextlib import contextmanager
from pathlib import PurePath
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response, StreamingResponse

from ..auth import get_required_user
from ..config import get_settings
from ..events import Event, event_stream
from ..ledger import CreditLedger, get_ledger
from ..limiter import limiter
from ..logging_config import api_logger as logger
from ..models.profile import Profile
from ..responses import bad_request, conflict, not_found, payment_required, success
from ..schemas.batch import BatchSettingsUpdate
from ..worker.batch_manager import BatchManager, BatchNotFoundError, batch_topic, get_batch_manager
from ..worker.batch_scheduler import BatchScheduler, BatchStateError, JobNotFoundError
from ..worker.job_record import JobRecord
from ..worker.upscale_client import SourceImage

router = APIRouter(prefix="/api/batches", tags=["batches"])
settings = get_settings()


# ============================================================
# HELPERS
# ============================================================

@contextmanager
def batch_errors():
    """Translate scheduler errors into API errors."""
    try:
        yield
    except BatchNotFoundError as e:
        not_found("Batch", str(e))
    except JobNotFoundError as e:
        not_found("Job", str(e))
    except BatchStateError as e:
        conflict(str(e))
    except ValueError as e:
        bad_request(str(e))


def _get_batch(manager: BatchManager, batch_id: str, user: Profile) -> BatchScheduler:
    with batch_errors():
        return manager.get(batch_id, user.id)


def _get_job(scheduler: BatchScheduler, job_id: str) -> JobRecord:
    with batch_errors():
        return scheduler.get_job(job_id)


async def _read_uploads(files: List[UploadFile]) -> List[SourceImage]:
    images = []
    for upload in files:
        data = await upload.read()
        images.append(SourceImage(
            filename=upload.filename or "image",
            content_type=upload.content_type or "application/octet-stream",
            data=data,
        ))
    return images


def download_name(job: JobRecord) -> str:
    stem = PurePath(job.source.filename).stem or "image"
    return f"upscaled-{stem}-{job.scale}x.{job.result.extension}"


# ============================================================
# SUBMISSION
# ============================================================

@router.post("")
@limiter.limit(settings.batch_rate_limit)
async def create_batch(
    request: Request,
    files: List[UploadFile] = File(...),
    scale: int = Form(2),
    concurrency: Optional[int] = Form(None),
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    """Submit a batch of images. Nothing is processed until the batch is started."""
    if not files:
        bad_request("At least one image is required")
    if len(files) > settings.max_batch_images:
        bad_request(f"A batch holds at most {settings.max_batch_images} images")

    images = await _read_uploads(files)
    with batch_errors():
        scheduler = manager.create(current_user.id, images, scale=scale, concurrency=concurrency)
    return success(scheduler.snapshot(), message=f"{len(images)} image(s) added")


@router.get("")
async def list_batches(
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    batches = manager.list(current_user.id)
    return success([b.summary() for b in batches], meta={"total": len(batches)})


@router.get("/{batch_id}")
async def get_batch(
    batch_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    return success(_get_batch(manager, batch_id, current_user).snapshot())


@router.post("/{batch_id}/images")
async def add_images(
    batch_id: str,
    files: List[UploadFile] = File(...),
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    scheduler = _get_batch(manager, batch_id, current_user)
    if len(scheduler.jobs) + len(files) > scheduler.max_images:
        bad_request(f"A batch holds at most {scheduler.max_images} images")

    images = await _read_uploads(files)
    with batch_errors():
        scheduler.add_images(images)
    return success(scheduler.snapshot())


@router.patch("/{batch_id}/settings")
async def update_batch_settings(
    batch_id: str,
    update: BatchSettingsUpdate,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    """Change scale (pending and failed jobs only) or concurrency (idle batches only)."""
    scheduler = _get_batch(manager, batch_id, current_user)
    with batch_errors():
        if update.concurrency is not None:
            scheduler.set_concurrency(update.concurrency)
        if update.scale is not None:
            scheduler.set_scale(update.scale)
    return success(scheduler.snapshot())


# ============================================================
# CONTROLS
# ============================================================

@router.post("/{batch_id}/start")
@limiter.limit(settings.batch_rate_limit)
async def start_batch(
    request: Request,
    batch_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Start processing pending images after checking the balance covers them."""
    scheduler = _get_batch(manager, batch_id, current_user)
    required = scheduler.projected_credits()
    available = await run_in_threadpool(ledger.balance, current_user.id)
    if available < required:
        payment_required(
            f"Insufficient credits. You need {required} credits but only have {available}.",
            details={"required": required, "available": available},
        )

    with batch_errors():
        scheduler.start()
    logger.info("batch_start_requested", batch_id=batch_id, user_id=current_user.id, required=required)
    return success(scheduler.snapshot())


@router.post("/{batch_id}/pause")
async def pause_batch(
    batch_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    scheduler = _get_batch(manager, batch_id, current_user)
    with batch_errors():
        scheduler.pause()
    return success(scheduler.snapshot())


@router.post("/{batch_id}/resume")
async def resume_batch(
    batch_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    scheduler = _get_batch(manager, batch_id, current_user)
    with batch_errors():
        scheduler.resume()
    return success(scheduler.snapshot())


@router.post("/{batch_id}/retry-failed")
async def retry_failed(
    batch_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    scheduler = _get_batch(manager, batch_id, current_user)
    retried = scheduler.retry_failed()
    return success(scheduler.snapshot(), meta={"retried": retried})


@router.delete("/{batch_id}/jobs/{job_id}")
async def remove_job(
    batch_id: str,
    job_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    scheduler = _get_batch(manager, batch_id, current_user)
    with batch_errors():
        scheduler.remove_item(job_id)
    return success(scheduler.snapshot())


@router.delete("/{batch_id}")
async def delete_batch(
    batch_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    """Cancel in-flight work and discard the batch. Cancelled jobs are not charged."""
    with batch_errors():
        manager.delete(batch_id, current_user.id)
    return success(message="Batch cleared")


# ============================================================
# RESULTS
# ============================================================

@router.get("/{batch_id}/jobs/{job_id}/source")
async def get_source(
    batch_id: str,
    job_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    job = _get_job(_get_batch(manager, batch_id, current_user), job_id)
    return Response(content=job.source.data, media_type=job.source.content_type)


@router.get("/{batch_id}/jobs/{job_id}/result")
async def get_result(
    batch_id: str,
    job_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    job = _get_job(_get_batch(manager, batch_id, current_user), job_id)
    if job.result is None:
        not_found("Result", job_id)
    return Response(
        content=job.result.data,
        media_type=job.result.content_type,
        headers={"Content-Disposition": f'inline; filename="{download_name(job)}"'},
    )


@router.get("/{batch_id}/download")
async def download_results(
    batch_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    """Zip archive of every completed result."""
    scheduler = _get_batch(manager, batch_id, current_user)
    completed = [job for job in scheduler.jobs if job.result is not None]
    if not completed:
        not_found("Completed images")

    buf = io.BytesIO()
    used = set()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_STORED) as archive:
        for job in completed:
            name = download_name(job)
            if name in used:
                path = PurePath(name)
                name = f"{path.stem}-{job.id}{path.suffix}"
            used.add(name)
            archive.writestr(name, job.result.data)

    return Response(
        content=buf.getvalue(),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="upscaled-{batch_id[:8]}.zip"'},
    )


@router.get("/{batch_id}/events")
async def batch_events(
    request: Request,
    batch_id: str,
    current_user: Profile = Depends(get_required_user),
    manager: BatchManager = Depends(get_batch_manager),
):
    """
    SSE stream of batch updates.

    Events: snapshot (on connect), job.updated, batch.updated, batch.alert,
    batch.completed, closed (batch deleted).
    """
    scheduler = _get_batch(manager, batch_id, current_user)
    return StreamingResponse(
        event_stream(
            request,
            [batch_topic(batch_id)],
            manager=manager.events,
            initial=Event(type="snapshot", data=scheduler.snapshot()),
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )

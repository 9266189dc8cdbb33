"""
In-memory registry of each user's batches.

Images and results are held in memory. They are released when a batch is
deleted, when it has sat idle for ``batch_ttl_seconds`` (running batches
are never evicted), or when the server shuts down.

Scheduler events are republished on the ``batch:<id>`` event topic.
"""
import asyncio
import time
from typing import Callable, Dict, List, Optional, Sequence

from ..config import Settings, get_settings
from ..events import Event, EventManager, event_manager
from ..ledger import CreditLedger, ledger as default_ledger
from ..logging_config import worker_logger as logger
from .batch_scheduler import BatchScheduler
from .upscale_client import SourceImage, UpscaleClient


class BatchNotFoundError(LookupError):
    """Raised when a batch does not exist or belongs to another user."""


def batch_topic(batch_id: str) -> str:
    return f"batch:{batch_id}"


class BatchManager:
    def __init__(
        self,
        client_factory: Callable[[], UpscaleClient] = UpscaleClient.from_settings,
        ledger: CreditLedger = default_ledger,
        events: EventManager = event_manager,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client_factory = client_factory
        self.ledger = ledger
        self.events = events
        self.settings = settings or get_settings()
        self.clock = clock
        self._batches: Dict[str, BatchScheduler] = {}
        self._last_active: Dict[str, float] = {}

    def create(
        self,
        user_id: str,
        images: Sequence[SourceImage],
        scale: int = 2,
        concurrency: Optional[int] = None,
        output_format: Optional[str] = None,
    ) -> BatchScheduler:
        """Create a batch and submit its images (nothing runs until start)."""
        self.evict_expired()
        scheduler = BatchScheduler(
            user_id=user_id,
            client=self.client_factory(),
            ledger=self.ledger,
            scale=scale,
            concurrency=concurrency or self.settings.default_concurrency,
            max_concurrency=self.settings.max_concurrency,
            max_images=self.settings.max_batch_images,
            output_format=output_format or self.settings.default_output_format,
        )
        scheduler.add_images(images)
        scheduler.subscribe(self._publisher(scheduler.id))
        self._batches[scheduler.id] = scheduler
        self._last_active[scheduler.id] = self.clock()
        logger.info("batch_created", batch_id=scheduler.id, user_id=user_id, images=len(images))
        return scheduler

    def get(self, batch_id: str, user_id: str) -> BatchScheduler:
        scheduler = self._batches.get(batch_id)
        if scheduler is None or scheduler.user_id != user_id:
            raise BatchNotFoundError(batch_id)
        self._last_active[batch_id] = self.clock()
        return scheduler

    def list(self, user_id: str) -> List[BatchScheduler]:
        self.evict_expired()
        batches = [b for b in self._batches.values() if b.user_id == user_id]
        return sorted(batches, key=lambda b: b.created_at, reverse=True)

    def delete(self, batch_id: str, user_id: str):
        """Cancel in-flight calls and drop the batch with all its image data."""
        self._drop(self.get(batch_id, user_id))
        logger.info("batch_deleted", batch_id=batch_id, user_id=user_id)

    def evict_expired(self) -> int:
        """Drop idle batches whose last access is older than the TTL."""
        cutoff = self.clock() - self.settings.batch_ttl_seconds
        expired = [
            scheduler for batch_id, scheduler in self._batches.items()
            if not scheduler.running and self._last_active.get(batch_id, 0) < cutoff
        ]
        for scheduler in expired:
            self._drop(scheduler)
        if expired:
            logger.info("batches_evicted", count=len(expired), remaining=len(self._batches))
        return len(expired)

    async def sweep_forever(self, interval: float):
        """Background eviction loop; runs until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.evict_expired()

    @property
    def active_count(self) -> int:
        return sum(1 for b in self._batches.values() if b.running)

    def __len__(self) -> int:
        return len(self._batches)

    async def shutdown(self):
        for scheduler in list(self._batches.values()):
            self._drop(scheduler)
        logger.info("batch_manager_stopped")

    def _drop(self, scheduler: BatchScheduler):
        scheduler.clear()
        self._batches.pop(scheduler.id, None)
        self._last_active.pop(scheduler.id, None)
        self.events.close_topic(batch_topic(scheduler.id))

    def _publisher(self, batch_id: str):
        topic = batch_topic(batch_id)

        def publish(event_type: str, payload: dict):
            self.events.publish(Event(type=event_type, data=payload), topic=topic)

        return publish


batch_manager = BatchManager()


def get_batch_manager() -> BatchManager:
    """Dependency returning the process-wide batch registry."""
    return batch_manager

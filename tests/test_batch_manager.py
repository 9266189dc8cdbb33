"""
Tests for the batch registry and its event fan-out.
"""
import asyncio
import json

import pytest

from upscaler.config import Settings, get_settings
from upscaler.events import Event, EventManager
from upscaler.worker.batch_manager import BatchManager, BatchNotFoundError, batch_topic
from upscaler.worker.upscale_client import SourceImage

from conftest import FakeUpscaleClient


class RecordingLedger:
    def __init__(self):
        self.debits = []

    def debit(self, user_id, amount, description, reference=None):
        self.debits.append((user_id, amount, reference))


@pytest.fixture
def events():
    return EventManager()


@pytest.fixture
def registry(events):
    return BatchManager(
        client_factory=FakeUpscaleClient,
        ledger=RecordingLedger(),
        events=events,
        settings=get_settings(),
    )


def sources(make_png, *names):
    return [SourceImage(name, "image/png", make_png()) for name in names]


class TestRegistry:

    def test_batches_are_scoped_to_owner(self, registry, make_png):
        batch = registry.create("alice", sources(make_png, "a.png"))
        assert registry.get(batch.id, "alice") is batch
        with pytest.raises(BatchNotFoundError):
            registry.get(batch.id, "bob")
        assert registry.list("bob") == []

    def test_defaults_from_settings(self, registry, make_png):
        batch = registry.create("alice", sources(make_png, "a.png"))
        settings = get_settings()
        assert batch.concurrency == settings.default_concurrency
        assert batch.max_images == settings.max_batch_images

    def test_delete(self, registry, make_png):
        batch = registry.create("alice", sources(make_png, "a.png"))
        registry.delete(batch.id, "alice")
        assert len(registry) == 0
        with pytest.raises(BatchNotFoundError):
            registry.delete(batch.id, "alice")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestEviction:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def expiring(self, events, clock):
        return BatchManager(
            client_factory=FakeUpscaleClient,
            ledger=RecordingLedger(),
            events=events,
            settings=Settings(batch_ttl_seconds=60),
            clock=clock,
        )

    def test_idle_batches_expire(self, expiring, clock, make_png):
        stale = expiring.create("alice", sources(make_png, "a.png"))
        clock.now += 30
        fresh = expiring.create("alice", sources(make_png, "b.png"))
        clock.now += 45

        assert expiring.evict_expired() == 1
        assert expiring.list("alice") == [fresh]
        assert stale.jobs == []
        with pytest.raises(BatchNotFoundError):
            expiring.get(stale.id, "alice")

    def test_access_keeps_batch_alive(self, expiring, clock, make_png):
        batch = expiring.create("alice", sources(make_png, "a.png"))
        clock.now += 50
        expiring.get(batch.id, "alice")
        clock.now += 50
        assert expiring.evict_expired() == 0
        assert len(expiring) == 1

    def test_running_batches_are_kept(self, expiring, clock, make_png):
        async def scenario():
            batch = expiring.create("alice", sources(make_png, "a.png"))
            batch.client.delay = 0.2
            batch.start()
            clock.now += 120
            assert expiring.evict_expired() == 0
            await batch.wait_complete(timeout=2)
            assert expiring.evict_expired() == 1

        asyncio.run(scenario())

    def test_eviction_closes_event_streams(self, expiring, events, clock, make_png):
        async def scenario():
            batch = expiring.create("alice", sources(make_png, "a.png"))
            queue = events.connect("client-1", [batch_topic(batch.id)])
            clock.now += 120
            expiring.evict_expired()

            types = []
            while not queue.empty():
                types.append(queue.get_nowait().type)
            assert types == ["connected", "closed"]

        asyncio.run(scenario())


class TestEvents:

    def test_scheduler_events_reach_topic_subscribers(self, registry, events, make_png):
        async def scenario():
            batch = registry.create("alice", sources(make_png, "a.png", "fail.png"))
            queue = events.connect("client-1", [batch_topic(batch.id)])
            other = events.connect("client-2", [batch_topic("unrelated")])

            batch.start()
            await batch.wait_complete(timeout=2)

            received = []
            while not queue.empty():
                received.append(queue.get_nowait().type)
            assert received[0] == "connected"
            assert "job.updated" in received
            assert received.count("batch.completed") == 1
            assert other.get_nowait().type == "connected"
            assert other.empty()

        asyncio.run(scenario())

    def test_shutdown_closes_streams(self, registry, events, make_png):
        async def scenario():
            batch = registry.create("alice", sources(make_png, "a.png"))
            queue = events.connect("client-1", [batch_topic(batch.id)])
            await registry.shutdown()

            types = []
            while not queue.empty():
                types.append(queue.get_nowait().type)
            assert types[-1] == "closed"
            assert len(registry) == 0

        asyncio.run(scenario())


def test_event_sse_format():
    event = Event(type="job.updated", data={"progress": 40})
    text = event.to_sse()
    assert text.startswith(f"id: {event.id}\nevent: job.updated\n")
    payload = json.loads(text.split("data: ", 1)[1])
    assert payload["data"] == {"progress": 40}


def test_disconnect_removes_empty_topics():
    manager = EventManager()
    manager.connect("c1", ["batch:1"])
    assert manager.subscribers("batch:1") == 1
    manager.disconnect("c1")
    assert manager.subscribers("batch:1") == 0
    assert manager.client_count == 0

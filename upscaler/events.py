"""
Upscaler Real-time Events (SSE)
Pub/sub fan-out of batch updates to Server-Sent Event streams
"""
from typing import AsyncGenerator, Dict, List, Optional, Set
import asyncio
import json
from datetime import datetime
from dataclasses import dataclass
import uuid

from fastapi import Request

from .logging_config import get_logger

logger = get_logger("events")

KEEPALIVE_SECONDS = 30.0


# ============================================================
# EVENT TYPES
# ============================================================

@dataclass
class Event:
    """Server-sent event structure"""
    type: str
    data: Dict
    id: str = ""
    timestamp: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = f"evt_{uuid.uuid4().hex[:8]}"
        if not self.timestamp:
            self.timestamp = datetime.utcnow().isoformat() + "Z"

    def to_sse(self) -> str:
        """Format as SSE message"""
        payload = {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        return f"id: {self.id}\nevent: {self.type}\ndata: {json.dumps(payload, default=str)}\n\n"


# ============================================================
# EVENT MANAGER (Pub/Sub)
# ============================================================

class EventManager:
    """Manages SSE connections and broadcasts"""

    def __init__(self):
        self._clients: Dict[str, asyncio.Queue] = {}
        self._topics: Dict[str, Set[str]] = {}  # topic -> client_ids

    def connect(self, client_id: str, topics: Optional[List[str]] = None) -> asyncio.Queue:
        """Register a new client"""
        queue = asyncio.Queue()
        self._clients[client_id] = queue

        topics = topics or ["all"]
        for topic in topics:
            self._topics.setdefault(topic, set()).add(client_id)

        queue.put_nowait(Event(
            type="connected",
            data={"client_id": client_id, "topics": topics}
        ))
        return queue

    def disconnect(self, client_id: str):
        """Remove a client"""
        self._clients.pop(client_id, None)
        for topic in list(self._topics):
            self._topics[topic].discard(client_id)
            if not self._topics[topic]:
                del self._topics[topic]

    def publish(self, event: Event, topic: str = "all"):
        """Queue event for every client subscribed to topic; never blocks"""
        client_ids = self._topics.get(topic, set()) | self._topics.get("all", set())
        for client_id in client_ids:
            queue = self._clients.get(client_id)
            if queue is not None:
                queue.put_nowait(event)

    def close_topic(self, topic: str):
        """Tell subscribers of topic that no more events will come"""
        self.publish(Event(type="closed", data={"topic": topic}), topic=topic)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def subscribers(self, topic: str) -> int:
        return len(self._topics.get(topic, set()))


# Global event manager
event_manager = EventManager()


# ============================================================
# STREAMING
# ============================================================

async def event_stream(
    request: Request,
    topics: List[str],
    manager: EventManager = event_manager,
    initial: Optional[Event] = None,
) -> AsyncGenerator[str, None]:
    """Generator for SSE stream"""
    client_id = f"client_{uuid.uuid4().hex[:8]}"
    queue = manager.connect(client_id, topics)
    if initial is not None:
        queue.put_nowait(initial)

    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield event.to_sse()
            if event.type == "closed":
                break
    finally:
        manager.disconnect(client_id)
        logger.debug("sse_client_disconnected", client_id=client_id, topics=topics)

"""
Pytest configuration and fixtures for Upscaler API tests.
"""
import os

os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-with-at-least-32-characters")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STABILITY_API_KEY", "sk-test-key")
os.environ.setdefault("UPSCALER_LOG_LEVEL", "WARNING")

import asyncio
import hashlib
import hmac
import io
import struct
import time
import zlib

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from upscaler.auth import create_access_token
from upscaler.checkout import get_checkout_gateway
from upscaler.config import get_settings
from upscaler.database import Base, get_db
from upscaler.events import EventManager
from upscaler.ledger import CreditLedger, get_ledger
from upscaler.limiter import limiter
from upscaler.main import app
from upscaler.routes.upscale import get_upscale_client
from upscaler.worker.batch_manager import BatchManager, get_batch_manager
from upscaler.worker.upscale_client import (
    RateLimitedError,
    UpscaleProgress,
    UpscaleResult,
    validate_image,
)

# Disable rate limiting for tests
limiter.enabled = False

TEST_USER_ID = "11111111-2222-3333-4444-555555555555"


def png_bytes(width: int = 100, height: int = 100, color=(255, 0, 0)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def png_header(width: int, height: int) -> bytes:
    """A PNG that declares ``width`` x ``height`` but carries no pixel data."""
    def chunk(kind: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(kind + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", crc)

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IDAT", b"") + chunk(b"IEND", b"")


def sign_payload(payload: bytes, secret: str, timestamp=None) -> str:
    """Build a `Stripe-Signature` header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeUpscaleClient:
    """Stands in for the remote service. Filenames containing "fail" are rate limited."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = []

    def validate(self, image, scale, output_format="png"):
        validate_image(image, scale, output_format, max_bytes=get_settings().max_image_bytes)

    async def upscale(self, image, scale, output_format="png", on_progress=None):
        self.validate(image, scale, output_format)
        self.calls.append(image.filename)
        if on_progress:
            on_progress(UpscaleProgress(0, "Sending image to upscaler..."))
        await asyncio.sleep(self.delay)
        if "fail" in image.filename:
            raise RateLimitedError()
        if on_progress:
            on_progress(UpscaleProgress(100, "Image upscaled successfully!"))
        return UpscaleResult(data=b"upscaled:" + image.data[:16], content_type="image/png")


class FakeCheckoutGateway:
    configured = True

    def __init__(self):
        self.created = []
        self.sessions = {}

    def create_session(self, user_id, package, success_url, cancel_url, customer_email=None):
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append({
            "user_id": user_id,
            "package": package,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        return {"session_id": session_id, "url": f"https://checkout.test/{session_id}"}

    def retrieve_session(self, session_id):
        return self.sessions[session_id]


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """Fresh file-backed database per test; each session gets its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def ledger(session_factory):
    return CreditLedger(session_factory=session_factory)


@pytest.fixture(scope="function")
def fake_client():
    return FakeUpscaleClient()


@pytest.fixture(scope="function")
def fake_gateway():
    return FakeCheckoutGateway()


@pytest.fixture(scope="function")
def manager(ledger, fake_client):
    return BatchManager(
        client_factory=lambda: fake_client,
        ledger=ledger,
        events=EventManager(),
        settings=get_settings(),
    )


@pytest.fixture(scope="function")
def client(session_factory, ledger, manager, fake_client, fake_gateway):
    """Create a test client with every external dependency replaced."""

    def get_test_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = get_test_db
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_batch_manager] = lambda: manager
    app.dependency_overrides[get_upscale_client] = lambda: fake_client
    app.dependency_overrides[get_checkout_gateway] = lambda: fake_gateway

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def auth_token():
    return create_access_token(TEST_USER_ID, email="test@example.com")


@pytest.fixture(scope="function")
def auth_headers(auth_token):
    """Get auth headers for the test user."""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def make_png():
    """Factory for small in-memory PNG images."""
    return png_bytes

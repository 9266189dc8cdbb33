"""
Tests for the remote upscale client against a mocked transport.
"""
import asyncio

import httpx
import pytest

from upscaler.worker.upscale_client import (
    ErrorCategory,
    InsufficientQuotaError,
    InvalidInputError,
    RateLimitedError,
    SourceImage,
    UnauthorizedError,
    UnknownUpscaleError,
    UpscaleClient,
    UpscaleTimeoutError,
    map_response_error,
)

API_URL = "https://upscaler.test/v2beta/stable-image/upscale/fast"


def make_client(handler, api_key="sk-test", timeout=5.0):
    return UpscaleClient(
        api_key=api_key,
        api_url=API_URL,
        timeout=timeout,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def image(make_png):
    return SourceImage(filename="photo.png", content_type="image/png", data=make_png(200, 150))


class TestUpscaleSuccess:

    def test_returns_result_and_sends_request(self, image):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            seen["accept"] = request.headers["accept"]
            seen["content_type"] = request.headers["content-type"]
            seen["body"] = request.content
            return httpx.Response(200, content=b"\x89PNG-upscaled", headers={"content-type": "image/png"})

        result = asyncio.run(make_client(handler).upscale(image, scale=2))

        assert result.data == b"\x89PNG-upscaled"
        assert result.content_type == "image/png"
        assert result.extension == "png"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["accept"] == "image/*"
        assert b'name="output_format"' in seen["body"]
        assert b'filename="photo.png"' in seen["body"]
        assert seen["content_type"].startswith("multipart/form-data; boundary=")
        boundary = seen["content_type"].split("boundary=")[1].encode()
        assert seen["body"].rstrip().endswith(b"--" + boundary + b"--")
        assert b"Content-Type: image/png" in seen["body"]

    def test_progress_is_ordered_and_complete(self, image):
        def handler(request):
            return httpx.Response(200, content=b"x" * 5000, headers={"content-type": "image/webp"})

        events = []
        client = make_client(handler)
        result = asyncio.run(client.upscale(image, 4, "webp", on_progress=events.append))

        percents = [e.percent for e in events]
        assert percents[0] == 0
        assert percents[-1] == 100
        assert percents == sorted(percents)
        assert any(0 < p <= 30 for p in percents)
        assert events[-1].message == "Image upscaled successfully!"
        assert result.extension == "webp"


class TestUpscaleFailures:

    @pytest.mark.parametrize("status,error_cls,category", [
        (400, InvalidInputError, ErrorCategory.INVALID_INPUT),
        (401, UnauthorizedError, ErrorCategory.UNAUTHORIZED),
        (402, InsufficientQuotaError, ErrorCategory.INSUFFICIENT_QUOTA),
        (429, RateLimitedError, ErrorCategory.RATE_LIMITED),
    ])
    def test_status_codes_map_to_categories(self, image, status, error_cls, category):
        def handler(request):
            return httpx.Response(status, json={"errors": ["nope"]})

        with pytest.raises(error_cls) as exc:
            asyncio.run(make_client(handler).upscale(image, 2))
        assert exc.value.category == category
        assert exc.value.status_code == status

    def test_unknown_status_includes_detail(self, image):
        def handler(request):
            return httpx.Response(500, json={"message": "upstream exploded"})

        with pytest.raises(UnknownUpscaleError) as exc:
            asyncio.run(make_client(handler).upscale(image, 2))
        assert exc.value.user_message == "API Error (500): upstream exploded"

    def test_timeout(self, image):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, content=b"late")

        with pytest.raises(UpscaleTimeoutError) as exc:
            asyncio.run(make_client(handler, timeout=0.05).upscale(image, 2))
        assert exc.value.category == ErrorCategory.TIMEOUT

    def test_network_error(self, image):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UnknownUpscaleError) as exc:
            asyncio.run(make_client(handler).upscale(image, 2))
        assert "Network error" in exc.value.user_message

    def test_invalid_input_never_reaches_network(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, content=b"")

        client = make_client(handler)
        bad_type = SourceImage("notes.txt", "text/plain", b"hello")
        empty = SourceImage("empty.png", "image/png", b"")

        for image, scale in [(bad_type, 2), (empty, 2)]:
            with pytest.raises(InvalidInputError):
                asyncio.run(client.upscale(image, scale))
        assert calls == []

    def test_unsupported_scale(self, image):
        client = make_client(lambda request: httpx.Response(200))
        with pytest.raises(InvalidInputError):
            client.validate(image, 3)

    def test_oversized_image(self):
        client = UpscaleClient("sk-test", API_URL, max_bytes=10)
        with pytest.raises(InvalidInputError) as exc:
            client.validate(SourceImage("big.png", "image/png", b"x" * 11), 2)
        assert "less than" in exc.value.user_message

    def test_missing_api_key(self, image):
        client = make_client(lambda request: httpx.Response(200), api_key="")
        with pytest.raises(UnauthorizedError):
            asyncio.run(client.upscale(image, 2))


def test_map_response_error_413():
    error = map_response_error(httpx.Response(413))
    assert isinstance(error, InvalidInputError)
    assert "too large" in error.user_message

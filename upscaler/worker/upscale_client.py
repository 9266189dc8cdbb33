"""
Remote Upscale Client
=====================
Wraps the external image-enhancement endpoint.

- Validates input locally before any network call
- Streams ordered progress events (0-30% upload, 30-100% download)
- Maps HTTP failures onto a small error taxonomy with user-facing messages

A failed call is never resumed; callers retry from 0%.
"""

import asyncio
import io
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import httpx
from PIL import Image

from ..config import Settings, get_settings
from ..logging_config import get_logger

logger = get_logger("upscale_client")

SUPPORTED_SCALES = (2, 4, 8)
OUTPUT_FORMATS = ("jpeg", "png", "webp")
SUPPORTED_CONTENT_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/webp"}
QUALITY_PROMPT = "high quality, detailed, sharp, professional photography"


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(str, Enum):
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_QUOTA = "insufficient_quota"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class UpscaleError(Exception):
    """Base class for remote upscale failures."""

    category = ErrorCategory.UNKNOWN
    default_message = "Failed to upscale image. Please try again."

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.user_message = message or self.default_message
        self.status_code = status_code
        super().__init__(self.user_message)


class InvalidInputError(UpscaleError):
    category = ErrorCategory.INVALID_INPUT
    default_message = "Invalid image or parameters. Please check your image and try again."


class UnauthorizedError(UpscaleError):
    category = ErrorCategory.UNAUTHORIZED
    default_message = "Authentication failed. Please check your API key."


class InsufficientQuotaError(UpscaleError):
    category = ErrorCategory.INSUFFICIENT_QUOTA
    default_message = "Insufficient credits on the upscaling provider account."


class RateLimitedError(UpscaleError):
    category = ErrorCategory.RATE_LIMITED
    default_message = "Rate limit exceeded. Please wait and try again."


class UpscaleTimeoutError(UpscaleError):
    category = ErrorCategory.TIMEOUT
    default_message = "Request timed out. Please try with a smaller image."


class UnknownUpscaleError(UpscaleError):
    category = ErrorCategory.UNKNOWN


STATUS_ERRORS = {
    400: InvalidInputError,
    401: UnauthorizedError,
    403: UnauthorizedError,
    402: InsufficientQuotaError,
    413: InvalidInputError,
    429: RateLimitedError,
}


# ============================================================
# PAYLOADS
# ============================================================

@dataclass
class SourceImage:
    """Original image bytes as uploaded by the user."""
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def release(self):
        self.data = b""


@dataclass
class UpscaleResult:
    """Upscaled image bytes and their declared content type."""
    data: bytes
    content_type: str

    @property
    def extension(self) -> str:
        subtype = self.content_type.split("/")[-1].split(";")[0].strip()
        return "jpg" if subtype == "jpeg" else subtype or "png"

    def release(self):
        self.data = b""


@dataclass(frozen=True)
class UpscaleProgress:
    percent: int
    message: str


ProgressCallback = Callable[[UpscaleProgress], None]


def validate_image(image: SourceImage, scale: int, output_format: str = "png",
                   max_bytes: Optional[int] = None):
    """Raise InvalidInputError unless the request can be sent as-is."""
    max_bytes = max_bytes if max_bytes is not None else get_settings().max_image_bytes

    content_type = (image.content_type or "").lower()
    if content_type not in SUPPORTED_CONTENT_TYPES:
        raise InvalidInputError("Invalid file type. Please upload a PNG, JPEG or WebP image.")
    if image.size == 0:
        raise InvalidInputError("Image file is empty.")
    if image.size > max_bytes:
        raise InvalidInputError(f"Image file size must be less than {max_bytes // (1024 * 1024)}MB.")
    if scale not in SUPPORTED_SCALES:
        raise InvalidInputError(f"Unsupported scale {scale}. Choose one of {list(SUPPORTED_SCALES)}.")
    if output_format not in OUTPUT_FORMATS:
        raise InvalidInputError(f"Unsupported output format '{output_format}'.")


class _ProgressReporter:
    """Forwards progress events, dropping any that would move backwards."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback
        self.last = -1

    def emit(self, percent: float, message: str):
        percent = max(0, min(100, int(round(percent))))
        if percent < self.last or self.callback is None:
            return
        self.last = percent
        self.callback(UpscaleProgress(percent=percent, message=message))


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        if body.get("message"):
            return str(body["message"])
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return "; ".join(str(e) for e in errors)
        if body.get("name"):
            return str(body["name"])
    return response.reason_phrase


def map_response_error(response: httpx.Response) -> UpscaleError:
    """Classify a non-2xx response."""
    error_cls = STATUS_ERRORS.get(response.status_code)
    if error_cls is InvalidInputError and response.status_code == 413:
        return InvalidInputError("Image file is too large for the upscaling provider.", response.status_code)
    if error_cls:
        return error_cls(status_code=response.status_code)
    return UnknownUpscaleError(
        f"API Error ({response.status_code}): {_error_detail(response)}",
        status_code=response.status_code,
    )


# ============================================================
# CLIENT
# ============================================================

class UpscaleClient:
    """Async client for the hosted fast upscaler."""

    def __init__(
        self,
        api_key: str,
        api_url: str,
        timeout: float = 45.0,
        max_bytes: int = 10 * 1024 * 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "UpscaleClient":
        settings = settings or get_settings()
        return cls(
            api_key=settings.stability_api_key,
            api_url=settings.stability_api_url,
            timeout=settings.upscale_timeout_seconds,
            max_bytes=settings.max_image_bytes,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def validate(self, image: SourceImage, scale: int, output_format: str = "png"):
        validate_image(image, scale, output_format, max_bytes=self.max_bytes)

    async def upscale(
        self,
        image: SourceImage,
        scale: int,
        output_format: str = "png",
        on_progress: Optional[ProgressCallback] = None,
    ) -> UpscaleResult:
        """Upscale one image, reporting progress along the way."""
        self.validate(image, scale, output_format)
        if not self.api_key:
            raise UnauthorizedError("Upscale API key is not configured.")

        reporter = _ProgressReporter(on_progress)
        reporter.emit(0, "Sending image to upscaler...")

        try:
            result = await asyncio.wait_for(
                self._send(image, output_format, reporter),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("upscale_timeout", filename=image.filename, timeout=self.timeout)
            raise UpscaleTimeoutError()
        except httpx.HTTPError as e:
            logger.warning("upscale_network_error", filename=image.filename, error=str(e))
            raise UnknownUpscaleError(f"Network error: {e}")

        reporter.emit(100, "Image upscaled successfully!")
        logger.info(
            "upscale_completed",
            filename=image.filename,
            scale=scale,
            input_bytes=image.size,
            output_bytes=len(result.data),
        )
        return result

    async def _send(self, image: SourceImage, output_format: str,
                    reporter: _ProgressReporter) -> UpscaleResult:
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            form = client.build_request(
                "POST",
                self.api_url,
                data={"output_format": output_format, "prompt": QUALITY_PROMPT},
                files={"image": (image.filename, image.data, image.content_type)},
                headers={"Authorization": f"Bearer {self.api_key}", "Accept": "image/*"},
            )
            total = int(form.headers.get("content-length") or 0)

            async def upload():
                sent = 0
                async for chunk in form.stream:
                    sent += len(chunk)
                    yield chunk
                    if total:
                        reporter.emit(sent * 30 / total, "Uploading image...")

            request = client.build_request("POST", self.api_url, headers=form.headers, content=upload())
            response = await client.send(request, stream=True)
            try:
                if response.status_code >= 400:
                    await response.aread()
                    error = map_response_error(response)
                    logger.warning(
                        "upscale_rejected",
                        status_code=response.status_code,
                        category=error.category.value,
                    )
                    raise error

                expected = int(response.headers.get("content-length") or 0)
                received = 0
                chunks = []
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
                    received += len(chunk)
                    if expected:
                        reporter.emit(
                            30 + min(received * 70 / expected, 70),
                            "Upscaling and downloading image...",
                        )
                    else:
                        reporter.emit(30, "Upscaling and downloading image...")

                return UpscaleResult(
                    data=b"".join(chunks),
                    content_type=response.headers.get("content-type", f"image/{output_format}"),
                )
            finally:
                await response.aclose()

    async def validate_api_key(self) -> bool:
        """Send a tiny test image to check that the key is accepted."""
        buf = io.BytesIO()
        Image.new("RGB", (100, 100), (255, 0, 0)).save(buf, format="PNG")
        sample = SourceImage(filename="test.png", content_type="image/png", data=buf.getvalue())
        try:
            await self.upscale(sample, scale=2)
            return True
        except UpscaleError as e:
            logger.warning("api_key_validation_failed", category=e.category.value, error=e.user_message)
            return False

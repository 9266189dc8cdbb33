"""
Single-image upscale: the one-shot counterpart to a batch.
"""
import base64
import binascii
import re

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from ..auth import get_required_user
from ..config import get_settings
from ..ledger import CreditLedger, LedgerError, get_ledger
from ..limiter import limiter
from ..logging_config import api_logger as logger
from ..models.profile import Profile
from ..responses import ApiException, bad_request, payment_required
from ..schemas.upscale import UpscaleRequest, UpscaleResponse
from ..worker.batch_scheduler import RECONCILIATION_MESSAGE
from ..worker.credit_estimator import estimate_credits
from ..worker.upscale_client import ErrorCategory, SourceImage, UpscaleClient, UpscaleError

router = APIRouter(prefix="/api/upscale", tags=["upscale"])
settings = get_settings()

DATA_URL = re.compile(r"^data:(?P<type>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)

ERROR_STATUS = {
    ErrorCategory.INVALID_INPUT: 400,
    ErrorCategory.RATE_LIMITED: 429,
    ErrorCategory.TIMEOUT: 504,
}


def get_upscale_client() -> UpscaleClient:
    return UpscaleClient.from_settings()


def decode_image(payload: str, filename: str) -> SourceImage:
    """Accept a data URL or bare base64 (assumed PNG)."""
    content_type = "image/png"
    match = DATA_URL.match(payload.strip())
    if match:
        content_type = match.group("type").lower()
        payload = match.group("data")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        bad_request("Image is not valid base64 data", code="INVALID_IMAGE")
    return SourceImage(filename=filename, content_type=content_type, data=data)


@router.post("", response_model=UpscaleResponse)
@limiter.limit(settings.upscale_rate_limit)
async def upscale_image(
    request: Request,
    body: UpscaleRequest,
    current_user: Profile = Depends(get_required_user),
    client: UpscaleClient = Depends(get_upscale_client),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Upscale one image and charge its estimated cost."""
    image = decode_image(body.image, body.filename)
    try:
        client.validate(image, body.scale, body.format)
    except UpscaleError as e:
        bad_request(e.user_message, code=e.category.value.upper())

    cost = estimate_credits(image.data, body.scale)
    available = await run_in_threadpool(ledger.balance, current_user.id)
    if available < cost:
        payment_required(
            f"Insufficient credits. You need {cost} credits but only have {available}.",
            details={"required": cost, "available": available},
        )

    try:
        result = await client.upscale(image, body.scale, body.format)
    except UpscaleError as e:
        raise ApiException(
            ERROR_STATUS.get(e.category, 502),
            e.user_message,
            e.category.value.upper(),
        )

    warning = None
    description = f"Used {cost} credit{'s' if cost != 1 else ''} for upscaling {image.filename} ({body.scale}x)"
    try:
        await run_in_threadpool(ledger.debit, current_user.id, cost, description)
    except LedgerError as e:
        logger.error("usage_not_recorded", error=e, user_id=current_user.id, amount=cost)
        warning = RECONCILIATION_MESSAGE

    balance = await run_in_threadpool(ledger.balance, current_user.id)
    encoded = base64.b64encode(result.data).decode("ascii")
    return UpscaleResponse(
        success=True,
        image=f"data:{result.content_type};base64,{encoded}",
        format=body.format,
        scale=body.scale,
        credits_used=0 if warning else cost,
        balance=balance,
        warning=warning,
    )

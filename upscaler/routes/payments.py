"""
Payment routes: hosted checkout for credit packages and the provider webhook.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from ..auth import get_required_user
from ..checkout import (
    CheckoutError,
    CheckoutGateway,
    SignatureVerificationError,
    get_checkout_gateway,
    get_package,
    purchase_description,
    verify_webhook,
)
from ..config import Settings, get_settings
from ..ledger import CreditLedger, LedgerError, get_ledger
from ..limiter import limiter
from ..logging_config import billing_logger as logger
from ..models.profile import Profile
from ..responses import ApiException, bad_gateway, bad_request, not_found
from ..schemas.payments import CheckoutRequest, CheckoutResponse

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/checkout", response_model=CheckoutResponse)
@limiter.limit(get_settings().checkout_rate_limit)
async def create_checkout(
    request: Request,
    body: CheckoutRequest,
    current_user: Profile = Depends(get_required_user),
    gateway: CheckoutGateway = Depends(get_checkout_gateway),
    settings: Settings = Depends(get_settings),
):
    """Start a hosted checkout for a credit package."""
    package = get_package(body.package_id, settings)
    if package is None:
        not_found("Credit package", body.package_id)

    try:
        session = await run_in_threadpool(
            gateway.create_session,
            current_user.id,
            package,
            body.success_url or settings.checkout_success_url,
            body.cancel_url or settings.checkout_cancel_url,
            current_user.email,
        )
    except CheckoutError as e:
        bad_gateway(f"Failed to create checkout session: {e}", code="CHECKOUT_FAILED")
    return CheckoutResponse(**session)


@router.get("/session/{session_id}")
async def get_checkout_session(
    session_id: str,
    current_user: Profile = Depends(get_required_user),
    gateway: CheckoutGateway = Depends(get_checkout_gateway),
):
    """Payment status for the success page. Credits are granted by the webhook only."""
    try:
        session = await run_in_threadpool(gateway.retrieve_session, session_id)
    except CheckoutError as e:
        if e.status_code == 404:
            not_found("Checkout session", session_id)
        bad_gateway(f"Failed to retrieve session: {e}", code="CHECKOUT_FAILED")

    owner = session.get("client_reference_id") or session["metadata"].get("userId")
    if owner != current_user.id:
        not_found("Checkout session", session_id)
    return {"ok": True, "session": session, "paid": session.get("payment_status") == "paid"}


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    ledger: CreditLedger = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
):
    """Provider webhook. Only signed ``checkout.session.completed`` events add credits."""
    payload = await request.body()
    try:
        event = verify_webhook(
            payload,
            request.headers.get("stripe-signature"),
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance,
        )
    except SignatureVerificationError as e:
        logger.warning("webhook_signature_invalid", reason=str(e))
        bad_request("Webhook signature verification failed", code="INVALID_SIGNATURE")

    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        await run_in_threadpool(_fulfil_checkout, ledger, obj)
    elif event_type == "payment_intent.succeeded":
        logger.info("payment_intent_succeeded", payment_intent=obj.get("id"))
    elif event_type == "payment_intent.payment_failed":
        logger.warning("payment_intent_failed", payment_intent=obj.get("id"))
    else:
        logger.info("webhook_unhandled", event_type=event_type)

    return {"received": True}


def _fulfil_checkout(ledger: CreditLedger, session: dict):
    metadata = session.get("metadata") or {}
    user_id = session.get("client_reference_id") or metadata.get("userId")
    package_id = metadata.get("packageId")
    try:
        credits = int(metadata.get("credits") or 0)
    except (TypeError, ValueError):
        credits = 0

    if not user_id or credits <= 0:
        logger.error("webhook_session_incomplete", session_id=session.get("id"))
        bad_request("Missing userId or credits in session metadata")

    if session.get("payment_status") == "unpaid":
        logger.info("checkout_awaiting_payment", session_id=session.get("id"), user_id=user_id)
        return

    try:
        ledger.credit(
            user_id,
            credits,
            purchase_description(credits, package_id),
            stripe_session_id=session.get("id"),
        )
    except LedgerError as e:
        logger.error("checkout_fulfilment_failed", error=e, session_id=session.get("id"), user_id=user_id)
        raise ApiException(500, "Failed to process webhook", "WEBHOOK_FAILED")

    logger.info("checkout_fulfilled", session_id=session.get("id"), user_id=user_id, credits=credits)

"""
Checkout gateway for credit top-ups.

Creates hosted checkout sessions through the Stripe SDK and verifies the
signed webhook that confirms a payment. Credits are only granted from a
verified ``checkout.session.completed`` event, never from the browser
redirect.
"""
from dataclasses import dataclass
from typing import List, Optional

import stripe

from .config import Settings, get_settings
from .logging_config import billing_logger as logger, timed


class CheckoutError(Exception):
    """Raised when the payment provider rejects or fails a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SignatureVerificationError(CheckoutError):
    """Raised when a webhook payload cannot be authenticated."""


# ============================================================
# CREDIT PACKAGES
# ============================================================

@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price: float
    price_id: str
    description: str
    popular: bool = False

    @property
    def unit_amount(self) -> int:
        """Price in cents."""
        return int(round(self.price * 100))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "price": self.price,
            "price_id": self.price_id,
            "description": self.description,
            "popular": self.popular,
        }


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage("starter", "50 Credits", 50, 4.99, "price_1Ra2YPPFQ0gfVHNFNVQB2skQ",
                  "Perfect for trying out the service"),
    CreditPackage("popular", "100 Credits", 100, 8.99, "price_1Ra2YPPFQ0gfVHNFhZKYRb1Z",
                  "Most popular choice", popular=True),
    CreditPackage("pro", "250 Credits", 250, 19.99, "price_1Ra2YQPFQ0gfVHNF2hbeLkCp",
                  "For power users"),
    CreditPackage("enterprise", "500 Credits", 500, 34.99, "price_1Ra2YQPFQ0gfVHNFg9aQgUsp",
                  "Maximum value pack"),
]


def list_packages(settings: Optional[Settings] = None) -> List[CreditPackage]:
    """Packages with any configured price id overrides applied."""
    overrides = (settings or get_settings()).stripe_price_ids
    packages = []
    for package in CREDIT_PACKAGES:
        price_id = overrides.get(package.id, package.price_id)
        packages.append(CreditPackage(
            package.id, package.name, package.credits, package.price,
            price_id, package.description, package.popular,
        ))
    return packages


def get_package(package_id: str, settings: Optional[Settings] = None) -> Optional[CreditPackage]:
    for package in list_packages(settings):
        if package.id == package_id:
            return package
    return None


def purchase_description(credits: int, package_id: str) -> str:
    return f"Purchased {credits} credits via Stripe ({package_id})"



# ============================================================
# WEBHOOK VERIFICATION
# ============================================================

def verify_webhook(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = 300,
) -> stripe.Event:
    """Authenticate a webhook body and return the parsed event."""
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not signature_header:
        raise SignatureVerificationError("Missing signature header")

    try:
        return stripe.Webhook.construct_event(payload, signature_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationError(e.user_message or str(e)) from e
    except ValueError as e:
        # Unparseable timestamp in the header or a body that is not JSON
        raise SignatureVerificationError(f"Invalid webhook payload: {e}") from e


# ============================================================
# GATEWAY
# ============================================================

class CheckoutGateway:
    """Thin seam over the provider SDK for hosted checkout sessions."""

    def __init__(self, secret_key: str):
        self.secret_key = secret_key

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CheckoutGateway":
        settings = settings or get_settings()
        return cls(settings.stripe_secret_key)

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _require_key(self):
        if not self.secret_key:
            raise CheckoutError("Payment provider is not configured")

    @timed(logger)
    def create_session(self, user_id: str, package: CreditPackage,
                       success_url: str, cancel_url: str,
                       customer_email: Optional[str] = None) -> dict:
        """Create a one-off payment session for ``package``; returns id and url."""
        self._require_key()
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{"price": package.price_id, "quantity": 1}],
            "client_reference_id": user_id,
            "metadata": {
                "userId": user_id,
                "packageId": package.id,
                "credits": str(package.credits),
            },
            "success_url": f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url,
            "billing_address_collection": "auto",
            "automatic_tax": {"enabled": True},
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            raise CheckoutError(e.user_message or str(e), status_code=e.http_status) from e

        logger.info(
            "checkout_session_created",
            user_id=user_id,
            package_id=package.id,
            session_id=session.id,
        )
        return {"session_id": session.id, "url": session.url}

    @timed(logger)
    def retrieve_session(self, session_id: str) -> dict:
        self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise CheckoutError(e.user_message or str(e), status_code=e.http_status) from e

        details = getattr(session, "customer_details", None)
        metadata = getattr(session, "metadata", None)
        return {
            "id": session.id,
            "payment_status": getattr(session, "payment_status", None),
            "customer_details": {
                "email": getattr(details, "email", None),
                "name": getattr(details, "name", None),
            } if details else None,
            "metadata": dict(metadata) if metadata else {},
            "client_reference_id": getattr(session, "client_reference_id", None),
        }


def get_checkout_gateway() -> CheckoutGateway:
    """Dependency returning a gateway built from settings."""
    return CheckoutGateway.from_settings()

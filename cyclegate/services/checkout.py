from typing import Any, Dict, Optional
import logging

import stripe
from fastapi import Request

from ..config import Settings
from ..exceptions import CheckoutValidationError, ConfigurationError, ExternalServiceError
from .accounts import normalize_email

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000"


def resolve_base_url(request: Request, settings: Settings) -> str:
    """Public URL for redirects: configured value, then proxy headers, then localhost."""
    if settings.app_base_url and settings.app_base_url.strip():
        return settings.app_base_url.strip().rstrip("/")

    host = request.headers.get("x-forwarded-host") or request.headers.get("host")
    proto = request.headers.get("x-forwarded-proto") or "https"
    if host:
        return f"{proto}://{host}"
    return DEFAULT_BASE_URL


def build_checkout_request(
    user_id: Optional[str],
    email: Optional[str] = None,
    *,
    price_id: Optional[str],
    base_url: str,
    app_slug: str = "cyclegate",
) -> Dict[str, Any]:
    """Build the parameters for a subscription checkout session.

    ``user_id`` travels as the correlation token in ``client_reference_id``,
    the session metadata and the subscription metadata, so checkout,
    invoice and subscription events can all be attributed to the user.
    """
    user_id = user_id.strip() if isinstance(user_id, str) else ""
    if not user_id:
        raise CheckoutValidationError("user_id", "is required")
    if not price_id:
        raise ConfigurationError("STRIPE_PRICE_ID", "price id is not configured")

    base_url = base_url.rstrip("/")
    params: Dict[str, Any] = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": f"{base_url}/vip?success=1&session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base_url}/vip?canceled=1",
        "allow_promotion_codes": True,
        "client_reference_id": user_id,
        "metadata": {"user_id": user_id, "app": app_slug},
        "subscription_data": {"metadata": {"user_id": user_id}},
    }

    customer_email = normalize_email(email)
    if customer_email:
        params["customer_email"] = customer_email
    return params


def create_checkout_session(params: Dict[str, Any], api_key: str):
    """Create the session on Stripe with an explicitly passed key."""
    if not api_key:
        raise ConfigurationError("STRIPE_SECRET_KEY", "Stripe secret key is not configured")

    try:
        session = stripe.checkout.Session.create(api_key=api_key, **params)
    except stripe.StripeError as e:
        raise ExternalServiceError("stripe", str(e), getattr(e, "http_status", None))

    logger.info(f"Created checkout session {session.id} for user {params['client_reference_id']}")
    return session

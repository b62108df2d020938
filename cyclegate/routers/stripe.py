import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cyclegate.auth import Identity, get_current_identity
from cyclegate.config import Settings, get_app_settings
from cyclegate.db import get_db
from cyclegate.exceptions import CycleGateError, NotFoundError
from cyclegate.models import ProcessedEvent
from cyclegate.schemas import CheckoutRequest, CheckoutResponse, EventStatus
from cyclegate.services.checkout import build_checkout_request, create_checkout_session, resolve_base_url
from cyclegate.services.stripe_events import WebhookEventProcessor

router = APIRouter()
logger = logging.getLogger(__name__)

@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature")
):
    """Stripe webhook handler with database-level idempotency."""

    # Signature is computed over the exact bytes received
    body = await request.body()

    processor = WebhookEventProcessor(
        db,
        settings.stripe_webhook_secret,
        tolerance=settings.stripe_webhook_tolerance,
    )
    try:
        ack = await processor.process_event(body, stripe_signature)
    except CycleGateError:
        raise
    except Exception as e:
        db.rollback()
        logger.exception(f"Unexpected error processing webhook: {e}")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    return ack.as_response()

@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request: Request,
    payload: Optional[CheckoutRequest] = None,
    identity: Identity = Depends(get_current_identity),
    settings: Settings = Depends(get_app_settings),
):
    """Start a subscription checkout for the signed-in user."""
    email = (payload.email if payload and payload.email else None) or identity.email
    params = build_checkout_request(
        identity.user_id,
        email,
        price_id=settings.stripe_price_id,
        base_url=resolve_base_url(request, settings),
        app_slug=settings.app_slug,
    )
    session = create_checkout_session(params, settings.stripe_secret_key)
    return CheckoutResponse(url=session.url, session_id=session.id)

@router.get("/events/{event_id}/status", response_model=EventStatus)
def get_event_status(
    event_id: str,
    db: Session = Depends(get_db)
):
    """Get processing status of a Stripe event."""
    event = db.get(ProcessedEvent, event_id)
    if not event:
        raise NotFoundError("event", event_id)
    return event

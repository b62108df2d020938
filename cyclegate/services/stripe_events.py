from dataclasses import dataclass
from typing import Any, Dict, Optional
import json
import logging

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import MissingWebhookSecretError, WebhookValidationError
from ..models import ProcessedEvent, UserAccount
from .accounts import (
    clear_active,
    find_by_customer_id,
    find_by_email,
    get_or_create_account,
    grant_cycle,
    link_payment_ids,
    normalize_email,
    utcnow,
)

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def object_id(value: Any) -> Optional[str]:
    """Stripe references arrive either as an id string or an expanded object."""
    if isinstance(value, dict):
        return _text(value.get("id"))
    return _text(value)


def correlation_token(obj: Dict[str, Any]) -> Optional[str]:
    """Find the user id stamped on the checkout, subscription or invoice."""
    metadata = _dict(obj.get("metadata"))
    candidates = [
        obj.get("client_reference_id"),
        metadata.get("user_id"),
        metadata.get("uid"),
        _dict(_dict(obj.get("subscription_details")).get("metadata")).get("user_id"),
        _dict(_dict(_dict(obj.get("parent")).get("subscription_details")).get("metadata")).get("user_id"),
    ]
    for line in _dict(obj.get("lines")).get("data") or []:
        candidates.append(_dict(_dict(line).get("metadata")).get("user_id"))

    for candidate in candidates:
        token = _text(candidate)
        if token:
            return token
    return None


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = _dict(_dict(invoice.get("parent")).get("subscription_details"))
    sub_id = object_id(details.get("subscription"))
    if sub_id:
        return sub_id
    for line in _dict(invoice.get("lines")).get("data") or []:
        sub_id = object_id(_dict(line).get("subscription"))
        if sub_id:
            return sub_id
    return None


@dataclass
class WebhookAck:
    event_id: str
    event_type: str
    dedup: bool = False

    def as_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"received": True}
        if self.dedup:
            body["dedup"] = True
        return body


class WebhookEventProcessor:
    """Apply Stripe webhook events to user accounts exactly once.

    Each call runs three stages: signature verification over the raw body,
    the idempotency gate (a ``ProcessedEvent`` row inserted in the same
    transaction as the dispatch), then dispatch by event type inside a
    SAVEPOINT. A dispatch failure rolls back only the SAVEPOINT; the marker
    is still committed so a redelivery is not reprocessed.
    """

    def __init__(self, db: Session, signing_secret: Optional[str], tolerance: int = 300):
        self.db = db
        self.signing_secret = signing_secret
        self.tolerance = tolerance
        self._handlers = {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
            INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_payment_succeeded,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
        }

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe signature and return the parsed event envelope."""
        if not self.signing_secret:
            raise MissingWebhookSecretError()
        if not signature:
            raise WebhookValidationError("stripe", "Missing Stripe signature")

        # Older SDKs format the signed string with %s, so bytes must be decoded first
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                raise WebhookValidationError("stripe", "Invalid payload encoding")

        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.signing_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise WebhookValidationError("stripe", f"Invalid signature: {e}")

        # Same parse as stripe.Webhook.construct_event, kept as plain dicts for the handlers
        try:
            event = json.loads(payload)
        except ValueError:
            raise WebhookValidationError("stripe", "Invalid payload")

        if not isinstance(event, dict) or not _text(event.get("id")) or not _text(event.get("type")):
            raise WebhookValidationError("stripe", "Invalid event data - missing id or type")
        return event

    def claim(self, event_id: str, event_type: str) -> bool:
        """Mark ``event_id`` as seen. Returns False if it already was.

        Leaves the transaction open on success so dispatch commits with it.
        """
        if self.db.get(ProcessedEvent, event_id) is not None:
            self.db.rollback()
            return False

        try:
            self.db.add(ProcessedEvent(event_id=event_id, event_type=event_type, processed_at=utcnow()))
            self.db.flush()
        except IntegrityError:
            # A concurrent delivery inserted it first
            self.db.rollback()
            return False
        return True

    async def dispatch(self, event: Dict[str, Any]) -> None:
        handler = self._handlers.get(event["type"])
        if handler is None:
            logger.info(f"Unhandled event type: {event['type']}")
            return
        await handler(_dict(_dict(event.get("data")).get("object")))

    async def process_event(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        event = self.verify(payload, signature)
        event_id = event["id"]
        event_type = event["type"]
        logger.info(f"Received Stripe webhook: {event_id} ({event_type})")

        if not self.claim(event_id, event_type):
            logger.info(f"Event {event_id} already processed")
            return WebhookAck(event_id=event_id, event_type=event_type, dedup=True)

        try:
            with self.db.begin_nested():
                await self.dispatch(event)
        except Exception:
            logger.exception(f"Failed to apply event {event_id} ({event_type}); keeping processed marker")

        self.db.commit()
        logger.info(f"Processed Stripe event {event_id} ({event_type})")
        return WebhookAck(event_id=event_id, event_type=event_type)

    def _resolve_account(
        self,
        token: Optional[str],
        customer_id: Optional[str],
        email: Optional[str],
        create: bool = False,
    ) -> Optional[UserAccount]:
        if token:
            if create:
                account, _ = get_or_create_account(self.db, token, email)
                return account
            account = self.db.get(UserAccount, token)
            if account is not None:
                return account
        if customer_id:
            account = find_by_customer_id(self.db, customer_id)
            if account is not None:
                return account
        if email:
            return find_by_email(self.db, email)
        return None

    async def _handle_checkout_completed(self, session: Dict[str, Any]):
        """Link the Stripe customer to the account. The first invoice grants the cycle."""
        customer_id = object_id(session.get("customer"))
        subscription_id = object_id(session.get("subscription"))
        email = normalize_email(_dict(session.get("customer_details")).get("email") or session.get("customer_email"))

        account = self._resolve_account(correlation_token(session), customer_id, email, create=True)
        if account is None:
            logger.info(f"No account for checkout {session.get('id')}, ignoring")
            return

        link_payment_ids(account, customer_id, subscription_id, email)
        account.subscription_active = True
        logger.info(f"Linked checkout {session.get('id')} to account {account.id}")

    async def _handle_invoice_payment_succeeded(self, invoice: Dict[str, Any]):
        customer_id = object_id(invoice.get("customer"))
        subscription_id = invoice_subscription_id(invoice)
        email = normalize_email(invoice.get("customer_email"))

        account = self._resolve_account(correlation_token(invoice), customer_id, email, create=True)
        if account is None:
            logger.info(f"No account for invoice {invoice.get('id')} (customer {customer_id}), ignoring")
            return

        link_payment_ids(account, customer_id, subscription_id, email, overwrite_subscription=True)
        account.subscription_active = True
        grant_cycle(self.db, account.id)
        logger.info(f"Unlocked a cycle for account {account.id} from invoice {invoice.get('id')}")

    async def _handle_subscription_deleted(self, subscription: Dict[str, Any]):
        customer_id = object_id(subscription.get("customer"))

        account = self._resolve_account(correlation_token(subscription), customer_id, None)
        if account is None:
            logger.info(f"No account for canceled subscription {subscription.get('id')}, ignoring")
            return

        clear_active(account)
        logger.info(f"Subscription {subscription.get('id')} canceled for account {account.id}")

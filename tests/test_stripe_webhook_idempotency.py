import asyncio
import json
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from cyclegate.exceptions import MissingWebhookSecretError, WebhookValidationError
from cyclegate.main import create_app
from cyclegate.models import ProcessedEvent, UserAccount
from cyclegate.services.stripe_events import WebhookEventProcessor, correlation_token

WEBHOOK_SECRET = "whsec_test_secret"


def make_event(event_id, event_type, obj):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def checkout_event(event_id, user_id=None, customer="cus_test", subscription="sub_test", email=None):
    obj = {
        "id": f"cs_{uuid.uuid4().hex[:10]}",
        "object": "checkout.session",
        "customer": customer,
        "subscription": subscription,
        "customer_details": {"email": email},
        "metadata": {},
    }
    if user_id:
        obj["client_reference_id"] = user_id
        obj["metadata"]["user_id"] = user_id
    return make_event(event_id, "checkout.session.completed", obj)


def invoice_event(event_id, user_id=None, customer="cus_test", subscription="sub_test", email=None):
    lines = [{"subscription": subscription, "metadata": {"user_id": user_id} if user_id else {}}]
    obj = {
        "id": f"in_{uuid.uuid4().hex[:10]}",
        "object": "invoice",
        "customer": customer,
        "customer_email": email,
        "subscription": subscription,
        "lines": {"data": lines},
    }
    return make_event(event_id, "invoice.payment_succeeded", obj)


def subscription_deleted_event(event_id, user_id=None, customer="cus_test"):
    obj = {
        "id": f"sub_{uuid.uuid4().hex[:10]}",
        "object": "subscription",
        "customer": customer,
        "status": "canceled",
        "metadata": {"user_id": user_id} if user_id else {},
    }
    return make_event(event_id, "customer.subscription.deleted", obj)


@pytest.fixture
def deliver(db_session, sign_payload):
    """Sign an event and run it through a processor bound to ``db_session``."""
    async def _deliver(event):
        payload = json.dumps(event)
        processor = WebhookEventProcessor(db_session, WEBHOOK_SECRET)
        return await processor.process_event(payload.encode("utf-8"), sign_payload(payload))
    return _deliver


def _unique_customer():
    return f"cus_{uuid.uuid4().hex[:12]}"


class TestWebhookIdempotency:

    @pytest.mark.asyncio
    async def test_duplicate_event_is_applied_once(self, db_session, test_user, event_id, deliver):
        event = invoice_event(event_id, user_id=test_user.id, customer=_unique_customer())

        first = await deliver(event)
        second = await deliver(event)

        assert first.as_response() == {"received": True}
        assert second.dedup is True
        assert second.as_response() == {"received": True, "dedup": True}

        db_session.refresh(test_user)
        assert test_user.unlocked_cycles == 1

    @pytest.mark.asyncio
    async def test_processed_marker_records_type(self, db_session, test_user, event_id, deliver):
        await deliver(invoice_event(event_id, user_id=test_user.id, customer=_unique_customer()))

        marker = db_session.get(ProcessedEvent, event_id)
        assert marker is not None
        assert marker.event_type == "invoice.payment_succeeded"
        assert marker.processed_at is not None

    @pytest.mark.asyncio
    async def test_unrecognized_event_is_acknowledged_and_marked(self, db_session, event_id, deliver):
        ack = await deliver(make_event(event_id, "customer.created", {"id": "cus_new"}))

        assert ack.as_response() == {"received": True}
        assert db_session.get(ProcessedEvent, event_id) is not None

        again = await deliver(make_event(event_id, "customer.created", {"id": "cus_new"}))
        assert again.dedup is True

    @pytest.mark.asyncio
    async def test_dispatch_failure_keeps_marker(self, db_session, test_user, event_id, deliver):
        event = invoice_event(event_id, user_id=test_user.id, customer=_unique_customer())

        with patch("cyclegate.services.stripe_events.grant_cycle", side_effect=RuntimeError("boom")):
            ack = await deliver(event)

        assert ack.as_response() == {"received": True}
        assert db_session.get(ProcessedEvent, event_id) is not None
        db_session.refresh(test_user)
        assert test_user.unlocked_cycles == 0

        # The redelivery is deduplicated rather than retried
        again = await deliver(event)
        assert again.dedup is True
        db_session.refresh(test_user)
        assert test_user.unlocked_cycles == 0

    @pytest.mark.asyncio
    async def test_missing_secret_is_rejected_before_parsing(self, db_session, event_id):
        payload = json.dumps(make_event(event_id, "customer.created", {}))
        processor = WebhookEventProcessor(db_session, "")

        with pytest.raises(MissingWebhookSecretError):
            await processor.process_event(payload.encode(), "t=1,v1=abc")
        assert db_session.get(ProcessedEvent, event_id) is None

    @pytest.mark.asyncio
    async def test_invalid_signature_does_not_mark_event(self, db_session, event_id, sign_payload):
        payload = json.dumps(make_event(event_id, "customer.created", {}))
        processor = WebhookEventProcessor(db_session, WEBHOOK_SECRET)

        with pytest.raises(WebhookValidationError):
            await processor.process_event(payload.encode(), sign_payload(payload, secret="whsec_wrong"))
        assert db_session.get(ProcessedEvent, event_id) is None

    def test_signature_is_checked_over_decoded_text(self, db_session, event_id, sign_payload):
        payload = json.dumps(make_event(event_id, "customer.created", {"name": "Zoë"}), ensure_ascii=False)
        signature = sign_payload(payload)
        processor = WebhookEventProcessor(db_session, WEBHOOK_SECRET)

        with patch("stripe.WebhookSignature.verify_header", return_value=True) as verify_header:
            event = processor.verify(payload.encode("utf-8"), signature)

        signed_payload = verify_header.call_args.args[0]
        assert isinstance(signed_payload, str)
        assert signed_payload == payload
        assert event["id"] == event_id

    def test_undecodable_body_is_rejected(self, db_session):
        processor = WebhookEventProcessor(db_session, WEBHOOK_SECRET)

        with pytest.raises(WebhookValidationError):
            processor.verify(b"\xff\xfe not utf-8", "t=1,v1=abc")

    @pytest.mark.asyncio
    async def test_event_without_id_is_rejected(self, db_session, sign_payload):
        payload = json.dumps({"type": "invoice.payment_succeeded", "data": {"object": {}}})
        processor = WebhookEventProcessor(db_session, WEBHOOK_SECRET)

        with pytest.raises(WebhookValidationError):
            await processor.process_event(payload.encode(), sign_payload(payload))


class TestEventHandlers:

    @pytest.mark.asyncio
    async def test_checkout_links_ids_without_unlocking(self, db_session, test_user, event_id, deliver):
        customer = _unique_customer()
        await deliver(checkout_event(event_id, user_id=test_user.id, customer=customer, subscription="sub_abc"))

        db_session.refresh(test_user)
        assert test_user.payment_customer_id == customer
        assert test_user.payment_subscription_id == "sub_abc"
        assert test_user.subscription_active is True
        assert test_user.unlocked_cycles == 0

    @pytest.mark.asyncio
    async def test_checkout_creates_unknown_account(self, db_session, event_id, deliver):
        user_id = f"user_{uuid.uuid4().hex[:8]}"
        await deliver(checkout_event(event_id, user_id=user_id, customer=_unique_customer(), email="New@Example.com"))

        account = db_session.get(UserAccount, user_id)
        assert account is not None
        assert account.email == "new@example.com"
        assert account.unlocked_cycles == 0
        assert account.created_at is not None

    @pytest.mark.asyncio
    async def test_created_at_is_preserved(self, db_session, test_user, deliver):
        created_at = test_user.created_at
        customer = _unique_customer()

        await deliver(checkout_event(f"evt_{uuid.uuid4().hex}", user_id=test_user.id, customer=customer))
        await deliver(invoice_event(f"evt_{uuid.uuid4().hex}", user_id=test_user.id, customer=customer))

        db_session.refresh(test_user)
        assert test_user.created_at == created_at
        assert test_user.unlocked_cycles == 1

    @pytest.mark.asyncio
    async def test_renewals_accumulate(self, db_session, test_user, deliver):
        customer = _unique_customer()
        for _ in range(3):
            await deliver(invoice_event(f"evt_{uuid.uuid4().hex}", user_id=test_user.id, customer=customer))

        db_session.refresh(test_user)
        assert test_user.unlocked_cycles == 3

    @pytest.mark.asyncio
    async def test_invoice_falls_back_to_customer_id(self, db_session, test_user, event_id, deliver):
        customer = _unique_customer()
        test_user.payment_customer_id = customer
        db_session.commit()

        await deliver(invoice_event(event_id, user_id=None, customer=customer))

        db_session.refresh(test_user)
        assert test_user.unlocked_cycles == 1
        assert test_user.subscription_active is True

    @pytest.mark.asyncio
    async def test_invoice_falls_back_to_email(self, db_session, test_user, event_id, deliver):
        customer = _unique_customer()
        await deliver(invoice_event(event_id, user_id=None, customer=customer, email=test_user.email.upper()))

        db_session.refresh(test_user)
        assert test_user.unlocked_cycles == 1
        assert test_user.payment_customer_id == customer

    @pytest.mark.asyncio
    async def test_unresolvable_invoice_is_a_no_op(self, db_session, event_id, deliver):
        before = db_session.query(UserAccount).count()

        ack = await deliver(invoice_event(event_id, user_id=None, customer=_unique_customer(), email=None))

        assert ack.as_response() == {"received": True}
        assert db_session.query(UserAccount).count() == before
        assert db_session.get(ProcessedEvent, event_id) is not None

    @pytest.mark.asyncio
    async def test_cancellation_keeps_unlocked_cycles(self, db_session, test_user, event_id, deliver):
        customer = _unique_customer()
        test_user.payment_customer_id = customer
        test_user.unlocked_cycles = 2
        test_user.subscription_active = True
        test_user.legacy_profile = {"vip": True, "subscriptionStatus": "active", "vipUntil": {"seconds": 4102444800}}
        db_session.commit()

        await deliver(subscription_deleted_event(event_id, customer=customer))

        db_session.refresh(test_user)
        assert test_user.unlocked_cycles == 2
        assert test_user.subscription_active is False
        assert test_user.legacy_profile == {"vip": False, "subscriptionStatus": "canceled"}

    @pytest.mark.asyncio
    async def test_cancellation_never_creates_accounts(self, db_session, event_id, deliver):
        user_id = f"user_{uuid.uuid4().hex[:8]}"
        await deliver(subscription_deleted_event(event_id, user_id=user_id, customer=_unique_customer()))

        assert db_session.get(UserAccount, user_id) is None


class TestCorrelationToken:

    def test_client_reference_id_wins(self):
        obj = {"client_reference_id": "u1", "metadata": {"user_id": "u2"}}
        assert correlation_token(obj) == "u1"

    def test_legacy_uid_metadata(self):
        assert correlation_token({"metadata": {"uid": "u_legacy"}}) == "u_legacy"

    def test_invoice_parent_subscription_details(self):
        obj = {"parent": {"subscription_details": {"metadata": {"user_id": "u3"}}}}
        assert correlation_token(obj) == "u3"

    def test_blank_values_are_skipped(self):
        obj = {"client_reference_id": "  ", "metadata": {"user_id": ""}, "lines": {"data": [{"metadata": {"user_id": "u4"}}]}}
        assert correlation_token(obj) == "u4"

    def test_nothing_found(self):
        assert correlation_token({"metadata": None, "lines": None}) is None


class TestConcurrentDelivery:

    @staticmethod
    def _process(session_factory, payload, signature):
        session = session_factory()
        try:
            processor = WebhookEventProcessor(session, WEBHOOK_SECRET)
            return asyncio.run(processor.process_event(payload, signature))
        finally:
            session.close()

    def test_distinct_events_each_unlock_a_cycle(self, session_factory, db_session, test_user, sign_payload):
        customer = _unique_customer()
        deliveries = []
        for _ in range(5):
            payload = json.dumps(invoice_event(f"evt_{uuid.uuid4().hex}", user_id=test_user.id, customer=customer))
            deliveries.append((payload.encode("utf-8"), sign_payload(payload)))

        with ThreadPoolExecutor(max_workers=5) as pool:
            acks = list(pool.map(lambda d: self._process(session_factory, *d), deliveries))

        assert all(not ack.dedup for ack in acks)
        db_session.expire_all()
        assert db_session.get(UserAccount, test_user.id).unlocked_cycles == 5

    def test_same_event_delivered_concurrently_unlocks_once(self, session_factory, db_session, test_user, event_id, sign_payload):
        payload = json.dumps(invoice_event(event_id, user_id=test_user.id, customer=_unique_customer()))
        body, signature = payload.encode("utf-8"), sign_payload(payload)

        with ThreadPoolExecutor(max_workers=5) as pool:
            acks = list(pool.map(lambda _: self._process(session_factory, body, signature), range(5)))

        assert sum(1 for ack in acks if not ack.dedup) == 1
        db_session.expire_all()
        assert db_session.get(UserAccount, test_user.id).unlocked_cycles == 1


class TestWebhookEndpoint:

    def _post(self, client, payload, signature=None):
        headers = {"Content-Type": "application/json"}
        if signature is not None:
            headers["Stripe-Signature"] = signature
        return client.post("/stripe/webhook", content=payload, headers=headers)

    def test_signed_delivery_and_redelivery(self, test_client, test_user, event_id, sign_payload):
        payload = json.dumps(invoice_event(event_id, user_id=test_user.id, customer=_unique_customer()))

        response = self._post(test_client, payload, sign_payload(payload))
        assert response.status_code == 200
        assert response.json() == {"received": True}

        response = self._post(test_client, payload, sign_payload(payload))
        assert response.status_code == 200
        assert response.json() == {"received": True, "dedup": True}

    def test_missing_signature(self, test_client, event_id):
        payload = json.dumps(make_event(event_id, "customer.created", {}))

        response = self._post(test_client, payload)
        assert response.status_code == 400
        assert "Missing Stripe signature" in response.json()["error"]

    def test_invalid_signature(self, test_client, event_id, sign_payload):
        payload = json.dumps(make_event(event_id, "customer.created", {}))

        response = self._post(test_client, payload, sign_payload(payload, secret="whsec_other"))
        assert response.status_code == 400
        assert response.json()["provider"] == "stripe"

    def test_tampered_body(self, test_client, event_id, sign_payload):
        payload = json.dumps(make_event(event_id, "customer.created", {}))
        signature = sign_payload(payload)

        response = self._post(test_client, payload.replace("customer.created", "invoice.payment_succeeded"), signature)
        assert response.status_code == 400

    def test_stale_timestamp(self, test_client, event_id, sign_payload):
        payload = json.dumps(make_event(event_id, "customer.created", {}))
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        response = self._post(test_client, payload, signature)
        assert response.status_code == 400

    def test_missing_secret_configuration(self, settings, event_id, sign_payload):
        app = create_app(settings.model_copy(update={"stripe_webhook_secret": ""}))
        client = TestClient(app)
        payload = json.dumps(make_event(event_id, "customer.created", {}))

        response = self._post(client, payload, sign_payload(payload))
        assert response.status_code == 400
        assert response.json()["setting"] == "STRIPE_WEBHOOK_SECRET"
        app.state.engine.dispose()

    def test_unexpected_error_returns_500(self, test_client, event_id, sign_payload):
        payload = json.dumps(make_event(event_id, "customer.created", {}))

        with patch.object(WebhookEventProcessor, "process_event", AsyncMock(side_effect=RuntimeError("boom"))):
            response = self._post(test_client, payload, sign_payload(payload))

        assert response.status_code == 500
        assert response.json() == {"error": "Webhook processing failed"}

    def test_event_status(self, test_client, event_id, sign_payload):
        payload = json.dumps(make_event(event_id, "customer.created", {}))
        self._post(test_client, payload, sign_payload(payload))

        response = test_client.get(f"/stripe/events/{event_id}/status")
        assert response.status_code == 200
        assert response.json()["event_type"] == "customer.created"

    def test_event_status_unknown(self, test_client):
        response = test_client.get("/stripe/events/evt_never_seen/status")
        assert response.status_code == 404

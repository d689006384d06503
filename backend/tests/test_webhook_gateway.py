"""
Unit tests for webhook event parsing and idempotent ingestion.

Tests focus on:
- Canonical event parsing (amounts, currencies, missing fields)
- Signature verification
- At most one conversion per (transaction, vendor), including races
"""
import hashlib
import hmac
import json
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from conftest import charge_refunded_event, payment_intent_event
from vouchfor.ledger.exceptions import (
    InvalidEventError,
    InvalidSignatureError,
    MissingVendorIdError,
    VendorInactiveError,
    VendorNotFoundError,
)
from vouchfor.storage.models import Conversion, ConversionStatus, OutboxKind
from vouchfor.storage.repo import ConversionRepository, OutboxRepository
from vouchfor.webhooks.events import PaymentSucceeded, Refunded, parse_event, verify_signature
from vouchfor.webhooks.gateway import WebhookGateway, generate_idempotency_key


def _conversion_count(db):
    with db.session() as session:
        return session.query(Conversion).count()


def _sign(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class TestParseEvent:
    """Tests for parse_event"""

    def test_payment_succeeded(self):
        """Amount is converted from cents and metadata kept"""
        event = parse_event(payment_intent_event("v1", amount=20000, created=1767225600))

        assert isinstance(event, PaymentSucceeded)
        assert event.transaction_id == "pi_123"
        assert event.vendor_id == "v1"
        assert event.amount == Decimal("200")
        assert event.currency == "USD"
        assert event.receipt_email == "buyer@example.com"
        assert event.occurred_at.year == 2026
        assert event.occurred_at.tzinfo is None

    def test_zero_decimal_currency(self):
        """JPY amounts are already whole units"""
        event = parse_event(payment_intent_event("v1", amount=5000, currency="jpy"))

        assert event.amount == Decimal("5000")
        assert event.currency == "JPY"

    def test_missing_vendor_id(self):
        """Payments without metadata.vendor_id are rejected"""
        raw = payment_intent_event("v1")
        raw["data"]["object"]["metadata"] = {}

        with pytest.raises(MissingVendorIdError) as exc_info:
            parse_event(raw)

        assert exc_info.value.transaction_id == "pi_123"

    def test_invalid_amount(self):
        """Non-integer amounts are rejected"""
        raw = payment_intent_event("v1")
        raw["data"]["object"]["amount"] = "200.00"

        with pytest.raises(InvalidEventError):
            parse_event(raw)

    def test_charge_refunded(self):
        """Refunds are keyed by the payment intent"""
        event = parse_event(charge_refunded_event("pi_9"))

        assert isinstance(event, Refunded)
        assert event.transaction_id == "pi_9"

    def test_unhandled_type(self):
        """Other event types are ignored"""
        assert parse_event({"type": "customer.created", "data": {"object": {}}}) is None

    def test_non_object_body(self):
        """Body must be a JSON object"""
        with pytest.raises(InvalidEventError):
            parse_event(["not", "an", "object"])


class TestVerifySignature:
    """Tests for verify_signature"""

    def test_valid_signature(self):
        """Correctly signed payload verifies"""
        payload = json.dumps(payment_intent_event("v1")).encode()

        verify_signature(payload, _sign(payload, "whsec_test"), "whsec_test")

    def test_wrong_secret(self):
        """Signature from another secret is rejected"""
        payload = b'{"type": "payment_intent.succeeded"}'

        with pytest.raises(InvalidSignatureError):
            verify_signature(payload, _sign(payload, "whsec_other"), "whsec_test")

    def test_tampered_payload(self):
        """Any change to the body invalidates the signature"""
        payload = b'{"amount": 100}'
        header = _sign(payload, "whsec_test")

        with pytest.raises(InvalidSignatureError):
            verify_signature(b'{"amount": 999}', header, "whsec_test")

    def test_stale_timestamp(self):
        """Signatures outside the tolerance are rejected"""
        payload = b"{}"
        header = _sign(payload, "whsec_test", timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidSignatureError):
            verify_signature(payload, header, "whsec_test", tolerance=300)

    def test_missing_header(self):
        """No header means no verification"""
        with pytest.raises(InvalidSignatureError):
            verify_signature(b"{}", "", "whsec_test")

    def test_body_not_utf8(self):
        """Undecodable bodies are rejected as unverifiable"""
        payload = b"\xff\xfe{"
        header = f"t={int(time.time())},v1=" + "0" * 64

        with pytest.raises(InvalidSignatureError):
            verify_signature(payload, header, "whsec_test")


class TestIdempotencyKey:
    """Tests for generate_idempotency_key"""

    def test_stable_and_vendor_scoped(self):
        """Same inputs give the same key, another vendor a different one"""
        key = generate_idempotency_key("pi_1", "v1")

        assert key == generate_idempotency_key("pi_1", "v1")
        assert key != generate_idempotency_key("pi_1", "v2")
        assert key == hashlib.sha256(b"pi_1::v1").hexdigest()


class TestRecordPayment:
    """Tests for WebhookGateway.record_payment"""

    def test_creates_pending_conversion_with_attribution_task(self, db, make_vendor, payment):
        """A new sale is stored pending, with its attribution task"""
        vendor = make_vendor()

        result = WebhookGateway(db).record_payment(payment(vendor.id))

        assert result.created is True
        with db.session() as session:
            conversion = ConversionRepository(session).get_by_id(result.conversion_id)
            assert conversion.status == ConversionStatus.PENDING
            assert conversion.amount == Decimal("200.00")
            assert conversion.referral_session_id is None
            assert OutboxRepository(session).get(OutboxKind.ATTRIBUTE, conversion.id) is not None

    def test_sequential_duplicate(self, db, make_vendor, payment):
        """Redelivery returns the original conversion"""
        vendor = make_vendor()
        gateway = WebhookGateway(db)

        first = gateway.record_payment(payment(vendor.id))
        second = gateway.record_payment(payment(vendor.id))

        assert second.action == "duplicate"
        assert second.conversion_id == first.conversion_id
        assert _conversion_count(db) == 1

    def test_same_transaction_other_vendor(self, db, make_vendor, payment):
        """One transaction may convert for several vendors"""
        vendor_a = make_vendor(name="A")
        vendor_b = make_vendor(name="B")
        gateway = WebhookGateway(db)

        gateway.record_payment(payment(vendor_a.id, transaction_id="pi_shared"))
        result = gateway.record_payment(payment(vendor_b.id, transaction_id="pi_shared"))

        assert result.created is True
        assert _conversion_count(db) == 2

    def test_concurrent_deliveries(self, db, make_vendor, payment):
        """Parallel deliveries of one event create exactly one conversion"""
        vendor = make_vendor()
        gateway = WebhookGateway(db)
        event = payment(vendor.id, transaction_id="pi_parallel")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: gateway.record_payment(event), range(8)))

        created = [r for r in results if r.created]
        assert len(created) == 1
        assert {r.conversion_id for r in results} == {created[0].conversion_id}
        assert _conversion_count(db) == 1

    def test_constraint_catches_race_past_precheck(self, db, make_vendor, payment):
        """A duplicate that slips past the pre-check is caught by the unique key"""
        vendor = make_vendor()
        gateway = WebhookGateway(db)
        original = gateway.record_payment(payment(vendor.id))

        calls = {"n": 0}
        real_lookup = ConversionRepository.get_by_idempotency_key

        def miss_first_time(repo, key):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_lookup(repo, key)

        with patch.object(ConversionRepository, "get_by_idempotency_key", miss_first_time):
            result = gateway.record_payment(payment(vendor.id))

        assert result.action == "duplicate"
        assert result.conversion_id == original.conversion_id
        assert _conversion_count(db) == 1

    def test_unknown_vendor(self, db, payment):
        """Sales for unknown vendors are not recorded"""
        with pytest.raises(VendorNotFoundError):
            WebhookGateway(db).record_payment(payment("missing-vendor"))

    def test_inactive_vendor(self, db, make_vendor, payment):
        """Sales for switched-off programs are not recorded"""
        vendor = make_vendor(is_active=False)

        with pytest.raises(VendorInactiveError):
            WebhookGateway(db).record_payment(payment(vendor.id))


class TestProcess:
    """Tests for WebhookGateway.process"""

    def test_ignores_unhandled_events(self, db):
        """Unhandled event types are acknowledged and ignored"""
        result = WebhookGateway(db).process({"type": "invoice.paid", "data": {"object": {}}})

        assert result.action == "ignored"

    def test_drops_invalid_events_without_raising(self, db):
        """Ledger errors are logged, never raised"""
        raw = payment_intent_event("v1")
        raw["data"]["object"]["metadata"] = {}

        with patch("vouchfor.webhooks.gateway.logger") as mock_logger:
            result = WebhookGateway(db).process(raw)

        assert result.action == "dropped"
        assert "vendor_id" in result.error
        mock_logger.warning.assert_called_once()

    def test_drops_unexpected_errors(self, db, make_vendor):
        """Unexpected failures are logged, never raised"""
        vendor = make_vendor()
        gateway = WebhookGateway(db)

        with patch.object(gateway, "record_payment", side_effect=RuntimeError("boom")):
            result = gateway.process(payment_intent_event(vendor.id))

        assert result.action == "dropped"
        assert result.error == "boom"

    def test_runs_queued_work_for_conversion(self, db, make_vendor):
        """The worker drains tasks for the recorded conversion"""
        vendor = make_vendor()
        worker = MagicMock()

        result = WebhookGateway(db, worker=worker).process(payment_intent_event(vendor.id))

        worker.drain.assert_called_once_with(result.conversion_id)

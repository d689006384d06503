"""
Unit tests for the refund cascade.
"""
from decimal import Decimal

import pytest

from vouchfor.ledger.attribution import AttributionResolver
from vouchfor.ledger.commission import CommissionEngine
from vouchfor.ledger.exceptions import ConversionNotFoundError, RefundDeferredError
from vouchfor.ledger.refunds import RefundProcessor
from vouchfor.storage.models import Commission, CommissionStatus, ConversionStatus, OutboxKind
from vouchfor.storage.repo import CommissionRepository, ConversionRepository, OutboxRepository
from vouchfor.webhooks.gateway import WebhookGateway


def _statuses(db, conversion_id):
    with db.session() as session:
        conversion = ConversionRepository(session).get_by_id(conversion_id)
        commission = CommissionRepository(session).get_by_conversion(conversion_id)
        return conversion, commission


@pytest.fixture
def commissioned(db, make_vendor, make_click, payment):
    """Confirmed conversion with a pending commission"""
    vendor = make_vendor(commission_value="15")
    make_click(vendor)
    conversion_id = WebhookGateway(db).record_payment(payment(vendor.id)).conversion_id
    AttributionResolver(db).attribute(conversion_id)
    CommissionEngine(db).calculate_commission(conversion_id)
    return conversion_id


class TestRefundTransaction:
    """Tests for RefundProcessor.refund_transaction"""

    def test_refund_cascades_to_commission(self, db, commissioned):
        """Refund moves conversion to refunded and commission to reversed"""
        result = RefundProcessor(db).refund_transaction("pi_123")

        assert result.refunded == [commissioned]
        assert result.commissions_reversed == 1
        conversion, commission = _statuses(db, commissioned)
        assert conversion.status == ConversionStatus.REFUNDED
        assert conversion.refunded_at is not None
        assert commission.status == CommissionStatus.REVERSED
        assert commission.reversed_at is not None
        assert commission.commission_amount == Decimal("30.00")

    def test_replay_is_noop(self, db, commissioned):
        """A second refund changes nothing"""
        processor = RefundProcessor(db)
        processor.refund_transaction("pi_123")
        _, first = _statuses(db, commissioned)

        result = processor.refund_transaction("pi_123")

        assert result.refunded == []
        assert result.commissions_reversed == 0
        conversion, commission = _statuses(db, commissioned)
        assert conversion.status == ConversionStatus.REFUNDED
        assert commission.status == CommissionStatus.REVERSED
        assert commission.reversed_at == first.reversed_at

    def test_approved_commission_reversed(self, db, commissioned):
        """Approved but unpaid commissions are reversed"""
        with db.session() as session:
            session.query(Commission).update({"status": CommissionStatus.APPROVED})

        RefundProcessor(db).refund_transaction("pi_123")

        _, commission = _statuses(db, commissioned)
        assert commission.status == CommissionStatus.REVERSED

    def test_paid_commission_untouched(self, db, commissioned):
        """Paid commissions are left for manual clawback"""
        with db.session() as session:
            session.query(Commission).update({"status": CommissionStatus.PAID})

        result = RefundProcessor(db).refund_transaction("pi_123")

        assert result.commissions_reversed == 0
        conversion, commission = _statuses(db, commissioned)
        assert conversion.status == ConversionStatus.REFUNDED
        assert commission.status == CommissionStatus.PAID

    def test_failed_conversion_stays_failed(self, db, make_vendor, payment):
        """Unattributed sales have nothing to reverse"""
        vendor = make_vendor()
        conversion_id = WebhookGateway(db).record_payment(payment(vendor.id)).conversion_id
        AttributionResolver(db).attribute(conversion_id)

        result = RefundProcessor(db).refund_transaction("pi_123")

        assert result.refunded == []
        conversion, _ = _statuses(db, conversion_id)
        assert conversion.status == ConversionStatus.FAILED

    def test_pending_conversion_deferred(self, db, make_vendor, payment):
        """Refund for a conversion still awaiting attribution is queued"""
        vendor = make_vendor()
        conversion_id = WebhookGateway(db).record_payment(payment(vendor.id)).conversion_id

        result = RefundProcessor(db).refund_transaction("pi_123")

        assert result.deferred == [conversion_id]
        conversion, _ = _statuses(db, conversion_id)
        assert conversion.status == ConversionStatus.PENDING
        with db.session() as session:
            assert OutboxRepository(session).get(OutboxKind.REFUND, conversion_id) is not None

    def test_unknown_transaction(self, db):
        """Refund with no matching conversion raises not found"""
        with pytest.raises(ConversionNotFoundError):
            RefundProcessor(db).refund_transaction("pi_unknown")


class TestRefundConversion:
    """Tests for RefundProcessor.refund_conversion"""

    def test_still_pending_raises_retryable(self, db, make_vendor, payment):
        """Deferred refund retries while the conversion is pending"""
        vendor = make_vendor()
        conversion_id = WebhookGateway(db).record_payment(payment(vendor.id)).conversion_id

        with pytest.raises(RefundDeferredError) as exc_info:
            RefundProcessor(db).refund_conversion(conversion_id)

        assert exc_info.value.retryable is True

    def test_applies_after_attribution(self, db, commissioned):
        """Once settled, the deferred refund cascades"""
        result = RefundProcessor(db).refund_conversion(commissioned)

        assert result.transaction_id == "pi_123"
        assert result.refunded == [commissioned]
        assert result.commissions_reversed == 1

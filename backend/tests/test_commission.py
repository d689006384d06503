"""
Unit tests for commission arithmetic and the commission engine.
"""
from decimal import Decimal
from unittest.mock import patch

import pytest

from vouchfor.ledger.attribution import AttributionResolver
from vouchfor.ledger.commission import CommissionEngine, compute_commission_amount
from vouchfor.ledger.exceptions import ConversionNotFoundError, NotAttributedError, ValidationError
from vouchfor.storage.models import Commission, CommissionStatus, CommissionType
from vouchfor.storage.repo import CommissionRepository
from vouchfor.webhooks.gateway import WebhookGateway


class TestComputeCommissionAmount:
    """Tests for compute_commission_amount"""

    def test_percentage(self):
        """15% of 200.00 is 30.00"""
        assert compute_commission_amount(CommissionType.PERCENTAGE, "15", "200.00") == Decimal("30.00")

    def test_fixed_ignores_sale_amount(self):
        """Fixed commission is the configured value for any sale"""
        assert compute_commission_amount(CommissionType.FIXED, "25.00", "999.99") == Decimal("25.00")
        assert compute_commission_amount(CommissionType.FIXED, "25.00", "1.00") == Decimal("25.00")

    def test_rounds_half_up_to_cents(self):
        """Half a cent rounds up"""
        # 10.05 * 5% = 0.5025 -> 0.50 ; 0.10 * 5% = 0.005 -> 0.01
        assert compute_commission_amount("percentage", "5", "10.05") == Decimal("0.50")
        assert compute_commission_amount("percentage", "5", "0.10") == Decimal("0.01")

    def test_floats_do_not_leak_binary_error(self):
        """Float inputs are converted through their decimal repr"""
        assert compute_commission_amount("percentage", 10.0, 19.99) == Decimal("2.00")

    def test_zero_sale(self):
        """Zero sale earns zero percentage commission"""
        assert compute_commission_amount("percentage", "15", "0") == Decimal("0.00")

    def test_unknown_type(self):
        """Unknown commission type is rejected"""
        with pytest.raises(ValidationError):
            compute_commission_amount("tiered", "15", "100")


class TestCommissionEngine:
    """Tests for CommissionEngine.calculate_commission"""

    def _confirmed_conversion(self, db, vendor, payment, make_click):
        make_click(vendor, affiliate_id="aff_42")
        result = WebhookGateway(db).record_payment(payment(vendor.id))
        AttributionResolver(db).attribute(result.conversion_id)
        return result.conversion_id

    def test_creates_pending_commission(self, db, make_vendor, make_click, payment):
        """Confirmed conversion gets a pending commission at the vendor rate"""
        vendor = make_vendor(commission_value="15")
        conversion_id = self._confirmed_conversion(db, vendor, payment, make_click)

        result = CommissionEngine(db).calculate_commission(conversion_id)

        assert result.created is True
        assert result.commission.commission_amount == Decimal("30.00")
        assert result.commission.status == CommissionStatus.PENDING
        assert result.commission.affiliate_id == "aff_42"
        assert result.commission.sale_amount == Decimal("200.00")

    def test_fixed_commission(self, db, make_vendor, make_click, payment):
        """Fixed programs pay the fixed amount"""
        vendor = make_vendor(commission_type=CommissionType.FIXED, commission_value="25.00")
        conversion_id = self._confirmed_conversion(db, vendor, payment, make_click)

        result = CommissionEngine(db).calculate_commission(conversion_id)

        assert result.commission.commission_amount == Decimal("25.00")
        assert result.commission.commission_type == CommissionType.FIXED

    def test_second_call_returns_existing(self, db, make_vendor, make_click, payment):
        """Calculating twice never creates a second commission"""
        vendor = make_vendor()
        conversion_id = self._confirmed_conversion(db, vendor, payment, make_click)
        engine = CommissionEngine(db)

        first = engine.calculate_commission(conversion_id)
        second = engine.calculate_commission(conversion_id)

        assert second.created is False
        assert second.commission.id == first.commission.id

    def test_constraint_race_returns_existing(self, db, make_vendor, make_click, payment):
        """A commission inserted concurrently after the pre-check is returned, not duplicated"""
        vendor = make_vendor()
        conversion_id = self._confirmed_conversion(db, vendor, payment, make_click)
        winner = CommissionEngine(db).calculate_commission(conversion_id).commission

        calls = {"n": 0}
        real_get = CommissionRepository.get_by_conversion

        def miss_first_time(repo, cid):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_get(repo, cid)

        with patch.object(CommissionRepository, "get_by_conversion", miss_first_time):
            result = CommissionEngine(db).calculate_commission(conversion_id)

        assert result.created is False
        assert result.commission.id == winner.id
        with db.session() as session:
            assert session.query(Commission).count() == 1

    def test_unknown_conversion(self, db):
        """Unknown conversion raises not found"""
        with pytest.raises(ConversionNotFoundError):
            CommissionEngine(db).calculate_commission("missing")

    def test_pending_conversion_not_attributed(self, db, make_vendor, payment):
        """Pending conversion has no affiliate to pay"""
        vendor = make_vendor()
        conversion_id = WebhookGateway(db).record_payment(payment(vendor.id)).conversion_id

        with pytest.raises(NotAttributedError) as exc_info:
            CommissionEngine(db).calculate_commission(conversion_id)

        assert exc_info.value.retryable is False

    def test_failed_conversion_not_attributed(self, db, make_vendor, payment):
        """Failed conversion never earns a commission"""
        vendor = make_vendor()
        conversion_id = WebhookGateway(db).record_payment(payment(vendor.id)).conversion_id
        AttributionResolver(db).attribute(conversion_id)  # no clicks -> failed

        with pytest.raises(NotAttributedError):
            CommissionEngine(db).calculate_commission(conversion_id)

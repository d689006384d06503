"""
Pytest configuration and shared fixtures for the referral ledger.
"""
import time
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from vouchfor.api.deps import LedgerServices
from vouchfor.api.main import create_app
from vouchfor.storage.db import Database
from vouchfor.storage.models import CommissionType, Vendor
from vouchfor.storage.repo import ReferralSessionRepository
from vouchfor.utils import utcnow
from vouchfor.webhooks.events import PaymentSucceeded


@pytest.fixture
def db(tmp_path):
    """File-backed SQLite database, so threads share committed state"""
    database = Database(f"sqlite:///{tmp_path / 'ledger.db'}")
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def services(db):
    """All ledger services bound to the test database"""
    return LedgerServices.from_database(db)


@pytest.fixture
def client(db):
    """API client bound to the test database"""
    return TestClient(create_app(db))


@pytest.fixture
def make_vendor(db):
    """Factory creating vendors with sensible program terms"""
    def _make(
        commission_type=CommissionType.PERCENTAGE,
        commission_value="15",
        cookie_duration=30,
        destination_url="https://shop.example.com/landing",
        is_active=True,
        name="Example Shop",
    ):
        with db.session() as session:
            vendor = Vendor(
                name=name,
                commission_type=commission_type,
                commission_value=Decimal(commission_value),
                cookie_duration=cookie_duration,
                destination_url=destination_url,
                is_active=is_active,
            )
            session.add(vendor)
            session.flush()
        return vendor

    return _make


@pytest.fixture
def make_click(db):
    """Factory recording a referral session at a given time"""
    def _make(vendor, affiliate_id="aff_1", created_at=None):
        with db.session() as session:
            return ReferralSessionRepository(session).create(
                affiliate_id=affiliate_id,
                vendor=vendor,
                created_at=created_at or utcnow() - timedelta(hours=1),
            )

    return _make


@pytest.fixture
def payment():
    """Factory for canonical payment events"""
    def _make(vendor_id, transaction_id="pi_123", amount="200.00", occurred_at=None):
        return PaymentSucceeded(
            event_id=f"evt_{transaction_id}",
            transaction_id=transaction_id,
            vendor_id=vendor_id,
            amount=Decimal(amount),
            currency="USD",
            occurred_at=occurred_at or utcnow(),
        )

    return _make


def payment_intent_event(vendor_id, transaction_id="pi_123", amount=20000, currency="usd", created=None):
    """Raw Stripe payment_intent.succeeded webhook body"""
    return {
        "id": f"evt_{transaction_id}",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": transaction_id,
                "object": "payment_intent",
                "amount": amount,
                "currency": currency,
                "created": int(time.time()) if created is None else created,
                "receipt_email": "buyer@example.com",
                "customer": "cus_1",
                "payment_method": "pm_1",
                "metadata": {"vendor_id": vendor_id},
            }
        },
    }


def charge_refunded_event(transaction_id="pi_123"):
    """Raw Stripe charge.refunded webhook body"""
    return {
        "id": f"evt_refund_{transaction_id}",
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": "ch_1",
                "object": "charge",
                "payment_intent": transaction_id,
            }
        },
    }


@pytest.fixture
def fixed_now():
    """Fixed naive UTC datetime for deterministic window tests"""
    return datetime(2026, 3, 15, 12, 0, 0)

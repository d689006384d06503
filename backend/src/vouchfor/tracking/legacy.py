"""Legacy tracking-event handling (signup events from older integrations).

Signups are matched to the affiliate's most recent click on any vendor.
They carry no commission; payment webhooks remain the only source of
commissionable sales.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError

from vouchfor.ledger.exceptions import ClickNotFoundError, ValidationError
from vouchfor.logging_config import get_logger
from vouchfor.storage.db import Database
from vouchfor.storage.models import SignupReferral
from vouchfor.storage.repo import ReferralSessionRepository, SignupReferralRepository

logger = get_logger(__name__)

SUPPORTED_EVENTS = frozenset({"signup"})


@dataclass
class SignupResult:
    signup: SignupReferral
    created: bool


class LegacyTrackingService:
    """Records events posted to the legacy tracking endpoint."""

    def __init__(self, db: Database):
        self.db = db

    def record_event(
        self,
        referral_id: str,
        event_name: str,
        metadata: dict[str, Any] | None = None,
    ) -> SignupResult:
        """Record a tracking event for an affiliate.

        Raises:
            ValidationError: Missing referral id or unsupported event
            ClickNotFoundError: Affiliate has no recorded click
        """
        if not referral_id:
            raise ValidationError("referral_id is required")
        if event_name not in SUPPORTED_EVENTS:
            raise ValidationError(f"Unsupported event_name: {event_name}")

        return self.record_signup(referral_id, metadata or {})

    def record_signup(self, affiliate_id: str, metadata: dict[str, Any]) -> SignupResult:
        """Insert a zero-commission signup for the affiliate's latest click."""
        with self.db.session() as session:
            click = ReferralSessionRepository(session).find_latest_for_affiliate(affiliate_id)
            if click is None:
                raise ClickNotFoundError(affiliate_id)

            signups = SignupReferralRepository(session)
            existing = signups.get(affiliate_id, click.vendor_id)
            if existing:
                logger.info(
                    "signup_already_recorded",
                    affiliate_id=affiliate_id,
                    vendor_id=click.vendor_id,
                )
                return SignupResult(signup=existing, created=False)

            vendor_id = click.vendor_id
            signup = SignupReferral(
                affiliate_id=affiliate_id,
                vendor_id=vendor_id,
                referral_session_id=click.id,
                event_name="signup",
                status="signup",
                commission_amount=Decimal("0"),
                metadata_json=metadata or None,
            )

        # Separate transaction so a concurrent duplicate surfaces as IntegrityError here
        try:
            with self.db.session() as session:
                SignupReferralRepository(session).add(signup)
        except IntegrityError:
            with self.db.session() as session:
                existing = SignupReferralRepository(session).get(affiliate_id, vendor_id)
            if existing is None:
                raise
            logger.info("signup_duplicate_race", affiliate_id=affiliate_id, vendor_id=vendor_id)
            return SignupResult(signup=existing, created=False)

        logger.info(
            "signup_recorded",
            signup_id=signup.id,
            affiliate_id=affiliate_id,
            vendor_id=vendor_id,
        )
        return SignupResult(signup=signup, created=True)

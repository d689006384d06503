"""Click recording for affiliate tracking links."""

from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from vouchfor.ledger.exceptions import (
    MissingDestinationError,
    VendorInactiveError,
    VendorNotFoundError,
)
from vouchfor.logging_config import get_logger
from vouchfor.storage.db import Database
from vouchfor.storage.models import ReferralSession, Vendor
from vouchfor.storage.repo import ReferralSessionRepository, VendorRepository

logger = get_logger(__name__)

REF_PARAM = "ref"


def build_redirect_url(destination_url: str, affiliate_id: str) -> str:
    """Append ``ref=<affiliate_id>`` to a vendor destination URL.

    Absolute URLs get their query rebuilt (an existing ``ref`` is replaced,
    the fragment is kept). Anything else, such as a relative path, falls
    back to plain string concatenation.
    """
    try:
        parts = urlsplit(destination_url)
    except ValueError:
        parts = None

    if parts is None or not parts.scheme or not parts.netloc:
        separator = "&" if "?" in destination_url else "?"
        return f"{destination_url}{separator}{REF_PARAM}={affiliate_id}"

    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != REF_PARAM]
    query.append((REF_PARAM, affiliate_id))
    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment)
    )


@dataclass
class ClickResult:
    """Outcome of a tracked click."""
    redirect_url: str
    session_id: str | None  # None when the session could not be stored


class ClickRecorder:
    """Records referral sessions when visitors follow tracking links.

    The redirect is the primary contract: failing to store a session is
    logged and never prevents the visitor from reaching the vendor.
    """

    def __init__(self, db: Database):
        self.db = db

    def get_trackable_vendor(self, vendor_id: str) -> Vendor:
        """Load a vendor that can receive tracked traffic.

        Raises:
            VendorNotFoundError: Unknown vendor
            VendorInactiveError: Program switched off
            MissingDestinationError: No destination URL configured
        """
        with self.db.session() as session:
            vendor = VendorRepository(session).get_by_id(vendor_id)

        if vendor is None:
            raise VendorNotFoundError(vendor_id)
        if not vendor.is_active:
            raise VendorInactiveError(vendor_id)
        if not vendor.destination_url:
            raise MissingDestinationError(vendor_id)
        return vendor

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_fixed(0.05),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _insert_session(
        self,
        affiliate_id: str,
        vendor: Vendor,
        user_agent: str | None,
        ip_address: str | None,
        landing_url: str | None,
    ) -> ReferralSession:
        with self.db.session() as session:
            return ReferralSessionRepository(session).create(
                affiliate_id=affiliate_id,
                vendor=vendor,
                user_agent=user_agent,
                ip_address=ip_address,
                landing_url=landing_url,
            )

    def record_session(
        self,
        affiliate_id: str,
        vendor: Vendor,
        user_agent: str | None = None,
        ip_address: str | None = None,
        landing_url: str | None = None,
    ) -> ReferralSession | None:
        """Store a session for the click; returns None if the store failed."""
        try:
            referral_session = self._insert_session(
                affiliate_id, vendor, user_agent, ip_address, landing_url
            )
        except SQLAlchemyError as e:
            logger.error(
                "click_record_failed",
                affiliate_id=affiliate_id,
                vendor_id=vendor.id,
                error=str(e),
            )
            return None

        logger.info(
            "click_recorded",
            session_id=referral_session.id,
            affiliate_id=affiliate_id,
            vendor_id=vendor.id,
            expires_at=referral_session.expires_at.isoformat(),
        )
        return referral_session

    def record_click(
        self,
        affiliate_id: str,
        vendor_id: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> ClickResult:
        """Validate the vendor, store a session and build the redirect target.

        Raises:
            NotFoundError: Vendor missing, inactive or without destination
        """
        vendor = self.get_trackable_vendor(vendor_id)
        referral_session = self.record_session(
            affiliate_id, vendor, user_agent=user_agent, ip_address=ip_address
        )
        return ClickResult(
            redirect_url=build_redirect_url(vendor.destination_url, affiliate_id),
            session_id=referral_session.id if referral_session else None,
        )

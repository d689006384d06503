"""Last-click attribution of conversions to referral sessions."""

from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from vouchfor.ledger.commission import CommissionEngine
from vouchfor.ledger.exceptions import ConversionNotFoundError, LedgerError
from vouchfor.logging_config import get_logger
from vouchfor.storage.db import Database
from vouchfor.storage.models import ConversionStatus, OutboxKind
from vouchfor.storage.repo import (
    ConversionRepository,
    OutboxRepository,
    ReferralSessionRepository,
)
from vouchfor.utils import utcnow

logger = get_logger(__name__)


class AttributionOutcome(str, Enum):
    """What an attribution attempt did."""
    ATTRIBUTED = "attributed"                  # session assigned, conversion confirmed
    FAILED = "failed"                          # no eligible session, conversion failed
    ALREADY_ATTRIBUTED = "already_attributed"  # session was set earlier
    SKIPPED = "skipped"                        # not pending, or a concurrent writer won


@dataclass
class AttributionResult:
    outcome: AttributionOutcome
    conversion_id: str
    referral_session_id: str | None = None
    affiliate_id: str | None = None


class AttributionResolver:
    """Assigns the most recent unexpired click to a pending conversion.

    A session is eligible when it belongs to the conversion's vendor, is
    active, and expires strictly after the conversion's event time. The
    confirming write only succeeds while the conversion is still pending,
    so concurrent invocations attribute at most once.
    """

    def __init__(self, db: Database, commission_engine: CommissionEngine | None = None):
        """Initialize resolver.

        Args:
            db: Database
            commission_engine: When given, commissions are calculated right
                after a successful attribution. The queued commission task
                covers any failure here.
        """
        self.db = db
        self.commission_engine = commission_engine

    def attribute(self, conversion_id: str) -> AttributionResult:
        """Attribute a conversion using last-click within the cookie window.

        Raises:
            ConversionNotFoundError: Unknown conversion
        """
        with self.db.session() as session:
            conversions = ConversionRepository(session)
            conversion = conversions.get_by_id(conversion_id)
            if conversion is None:
                raise ConversionNotFoundError(conversion_id)

            if conversion.referral_session_id:
                logger.info("conversion_already_attributed", conversion_id=conversion_id)
                return AttributionResult(
                    outcome=AttributionOutcome.ALREADY_ATTRIBUTED,
                    conversion_id=conversion_id,
                    referral_session_id=conversion.referral_session_id,
                    affiliate_id=conversion.affiliate_id,
                )

            if conversion.status != ConversionStatus.PENDING:
                logger.info(
                    "attribution_skipped",
                    conversion_id=conversion_id,
                    status=conversion.status.value,
                )
                return AttributionResult(
                    outcome=AttributionOutcome.SKIPPED, conversion_id=conversion_id
                )

            click = ReferralSessionRepository(session).find_last_click(
                conversion.vendor_id, conversion.converted_at
            )

            if click is None:
                if not conversions.mark_failed(conversion_id):
                    return AttributionResult(
                        outcome=AttributionOutcome.SKIPPED, conversion_id=conversion_id
                    )
                logger.info(
                    "attribution_no_session",
                    conversion_id=conversion_id,
                    vendor_id=conversion.vendor_id,
                    converted_at=conversion.converted_at.isoformat(),
                )
                return AttributionResult(
                    outcome=AttributionOutcome.FAILED, conversion_id=conversion_id
                )

            if not conversions.set_attribution(conversion_id, click, confirmed_at=utcnow()):
                logger.info("attribution_lost_race", conversion_id=conversion_id)
                return AttributionResult(
                    outcome=AttributionOutcome.SKIPPED, conversion_id=conversion_id
                )

            OutboxRepository(session).enqueue(OutboxKind.COMMISSION, conversion_id)

        logger.info(
            "conversion_attributed",
            conversion_id=conversion_id,
            session_id=click.id,
            affiliate_id=click.affiliate_id,
        )

        if self.commission_engine is not None:
            try:
                self.commission_engine.calculate_commission(conversion_id)
            except (LedgerError, SQLAlchemyError) as e:
                # Attribution stands; the queued commission task retries
                logger.error(
                    "commission_calculation_failed",
                    conversion_id=conversion_id,
                    error=str(e),
                )

        return AttributionResult(
            outcome=AttributionOutcome.ATTRIBUTED,
            conversion_id=conversion_id,
            referral_session_id=click.id,
            affiliate_id=click.affiliate_id,
        )

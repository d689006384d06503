"""Refund cascade: refunded conversions reverse their unpaid commissions."""

from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from vouchfor.ledger.exceptions import ConversionNotFoundError, RefundDeferredError
from vouchfor.ledger.states import REVERSIBLE_COMMISSION_STATUSES
from vouchfor.logging_config import get_logger
from vouchfor.storage.db import Database
from vouchfor.storage.models import Conversion, ConversionStatus, OutboxKind
from vouchfor.storage.repo import CommissionRepository, ConversionRepository, OutboxRepository
from vouchfor.utils import utcnow

logger = get_logger(__name__)


@dataclass
class RefundResult:
    transaction_id: str | None = None
    refunded: list[str] = field(default_factory=list)   # conversions moved to refunded
    deferred: list[str] = field(default_factory=list)   # conversions still pending
    commissions_reversed: int = 0


class RefundProcessor:
    """Applies refunds to conversions and their commissions.

    Only confirmed conversions become refunded; commissions are reversed
    from pending or approved. Replays leave refunded rows untouched.
    """

    def __init__(self, db: Database):
        self.db = db

    def refund_transaction(self, transaction_id: str) -> RefundResult:
        """Refund every conversion recorded for a provider transaction.

        Raises:
            ConversionNotFoundError: No conversion for the transaction
        """
        result = RefundResult(transaction_id=transaction_id)
        with self.db.session() as session:
            conversions = ConversionRepository(session).list_by_transaction(transaction_id)
            if not conversions:
                raise ConversionNotFoundError(transaction_id)

            for conversion in conversions:
                if conversion.status == ConversionStatus.PENDING:
                    # Attribution still running; apply once it settles
                    OutboxRepository(session).enqueue(OutboxKind.REFUND, conversion.id)
                    result.deferred.append(conversion.id)
                    continue
                self._apply(session, conversion, result)

        logger.info(
            "refund_processed",
            transaction_id=transaction_id,
            refunded=result.refunded,
            deferred=result.deferred,
            commissions_reversed=result.commissions_reversed,
        )
        return result

    def refund_conversion(self, conversion_id: str) -> RefundResult:
        """Apply a deferred refund to a single conversion.

        Raises:
            ConversionNotFoundError: Unknown conversion
            RefundDeferredError: Conversion is still pending
        """
        result = RefundResult()
        with self.db.session() as session:
            conversion = ConversionRepository(session).get_by_id(conversion_id)
            if conversion is None:
                raise ConversionNotFoundError(conversion_id)
            if conversion.status == ConversionStatus.PENDING:
                raise RefundDeferredError(conversion_id)

            result.transaction_id = conversion.external_transaction_id
            self._apply(session, conversion, result)

        return result

    def _apply(self, session: Session, conversion: Conversion, result: RefundResult) -> None:
        if conversion.status == ConversionStatus.FAILED:
            logger.info("refund_for_unattributed_conversion", conversion_id=conversion.id)
            return

        now = utcnow()
        if conversion.status == ConversionStatus.CONFIRMED:
            if ConversionRepository(session).mark_refunded(conversion.id, now):
                result.refunded.append(conversion.id)

        reversed_count = CommissionRepository(session).reverse_for_conversion(
            conversion.id, REVERSIBLE_COMMISSION_STATUSES, now
        )
        result.commissions_reversed += reversed_count
        if reversed_count:
            logger.info(
                "commissions_reversed",
                conversion_id=conversion.id,
                count=reversed_count,
            )

"""Webhook gateway: turns payment events into ledger records exactly once."""

import hashlib
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from vouchfor.ledger.exceptions import LedgerError, VendorInactiveError, VendorNotFoundError
from vouchfor.ledger.outbox import OutboxWorker
from vouchfor.ledger.refunds import RefundProcessor
from vouchfor.logging_config import get_logger
from vouchfor.storage.db import Database
from vouchfor.storage.models import Conversion, ConversionStatus, OutboxKind
from vouchfor.storage.repo import ConversionRepository, OutboxRepository, VendorRepository
from vouchfor.webhooks.events import PaymentEvent, PaymentSucceeded, Refunded, parse_event

logger = get_logger(__name__)


def generate_idempotency_key(transaction_id: str, vendor_id: str) -> str:
    """Stable key for one real-world sale of one vendor."""
    return hashlib.sha256(f"{transaction_id}::{vendor_id}".encode("utf-8")).hexdigest()


@dataclass
class IngestResult:
    """What processing a webhook event did."""
    action: str  # conversion_created, duplicate, refunded, ignored, dropped
    conversion_id: str | None = None
    conversion_ids: tuple[str, ...] = ()
    error: str | None = None

    @property
    def created(self) -> bool:
        return self.action == "conversion_created"


class WebhookGateway:
    """Processes provider events after the webhook has been acknowledged.

    Conversion creation is check-then-insert on the idempotency key, with
    the unique constraint as the final word: losing an insert race is the
    same outcome as finding the row on pre-check.
    """

    def __init__(
        self,
        db: Database,
        worker: OutboxWorker | None = None,
        refunds: RefundProcessor | None = None,
    ):
        """Initialize gateway.

        Args:
            db: Database
            worker: When given, queued work for the affected conversion is
                run right after the event is recorded
            refunds: Refund processor (defaults to one on the same database)
        """
        self.db = db
        self.worker = worker
        self.refunds = refunds or RefundProcessor(db)

    def process(self, raw_event: Any) -> IngestResult:
        """Process a raw webhook body. Never raises.

        Failures are logged; the provider already has its acknowledgement.
        """
        try:
            event = parse_event(raw_event)
            if event is None:
                event_type = raw_event.get("type") if isinstance(raw_event, dict) else None
                logger.info("stripe_webhook_unhandled", event_type=event_type)
                return IngestResult(action="ignored")

            result = self.handle(event)
        except LedgerError as e:
            logger.warning("stripe_webhook_dropped", error=e.message, error_type=type(e).__name__)
            return IngestResult(action="dropped", error=e.message)
        except Exception as e:
            logger.error("stripe_webhook_processing_error", error=str(e), exc_info=True)
            return IngestResult(action="dropped", error=str(e))

        self._run_queued_work(result)
        return result

    def handle(self, event: PaymentEvent) -> IngestResult:
        """Apply a canonical event to the ledger.

        Raises:
            LedgerError: Event cannot be applied (unknown vendor, no conversion)
        """
        if isinstance(event, PaymentSucceeded):
            return self.record_payment(event)
        if isinstance(event, Refunded):
            return self.record_refund(event)
        raise TypeError(f"Unsupported event: {type(event).__name__}")

    def record_payment(self, event: PaymentSucceeded) -> IngestResult:
        """Create a pending conversion and queue its attribution.

        Raises:
            VendorNotFoundError: Unknown vendor
            VendorInactiveError: Vendor program is switched off
        """
        idempotency_key = generate_idempotency_key(event.transaction_id, event.vendor_id)

        with self.db.session() as session:
            vendor = VendorRepository(session).get_by_id(event.vendor_id)
            if vendor is None:
                raise VendorNotFoundError(event.vendor_id)
            if not vendor.is_active:
                raise VendorInactiveError(event.vendor_id)

            existing = ConversionRepository(session).get_by_idempotency_key(idempotency_key)

        if existing:
            logger.info(
                "conversion_already_exists",
                conversion_id=existing.id,
                transaction_id=event.transaction_id,
            )
            return IngestResult(action="duplicate", conversion_id=existing.id)

        conversion = Conversion(
            external_transaction_id=event.transaction_id,
            idempotency_key=idempotency_key,
            vendor_id=event.vendor_id,
            amount=event.amount,
            currency=event.currency,
            metadata_json={
                "customer_email": event.receipt_email,
                "customer_id": event.customer,
                "payment_method": event.payment_method,
                **event.metadata,
            },
            status=ConversionStatus.PENDING,
            converted_at=event.occurred_at,
        )

        try:
            with self.db.session() as session:
                ConversionRepository(session).add(conversion)
                OutboxRepository(session).enqueue(OutboxKind.ATTRIBUTE, conversion.id)
        except IntegrityError:
            with self.db.session() as session:
                existing = ConversionRepository(session).get_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            logger.info(
                "conversion_already_exists_constraint",
                conversion_id=existing.id,
                transaction_id=event.transaction_id,
            )
            return IngestResult(action="duplicate", conversion_id=existing.id)

        logger.info(
            "conversion_created",
            conversion_id=conversion.id,
            transaction_id=event.transaction_id,
            vendor_id=event.vendor_id,
            amount=str(event.amount),
            currency=event.currency,
            converted_at=event.occurred_at.isoformat(),
        )
        return IngestResult(action="conversion_created", conversion_id=conversion.id)

    def record_refund(self, event: Refunded) -> IngestResult:
        """Refund the transaction's conversions and reverse unpaid commissions.

        Raises:
            ConversionNotFoundError: No conversion for the transaction
        """
        result = self.refunds.refund_transaction(event.transaction_id)
        return IngestResult(
            action="refunded",
            conversion_ids=tuple(result.refunded + result.deferred),
        )

    def _run_queued_work(self, result: IngestResult) -> None:
        if self.worker is None:
            return

        conversion_ids = list(result.conversion_ids)
        if result.conversion_id:
            conversion_ids.append(result.conversion_id)

        for conversion_id in conversion_ids:
            try:
                self.worker.drain(conversion_id)
            except SQLAlchemyError as e:
                # Tasks stay queued for the standalone worker
                logger.error("outbox_drain_failed", conversion_id=conversion_id, error=str(e))

"""Commission calculation from attributed conversions."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import IntegrityError

from vouchfor.ledger.exceptions import (
    ConversionNotFoundError,
    NotAttributedError,
    ValidationError,
    VendorNotFoundError,
)
from vouchfor.logging_config import get_logger
from vouchfor.storage.db import Database
from vouchfor.storage.models import (
    Commission,
    CommissionStatus,
    CommissionType,
    ConversionStatus,
)
from vouchfor.storage.repo import CommissionRepository, ConversionRepository, VendorRepository

logger = get_logger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Exact decimal for a monetary value (floats go through their repr)."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def compute_commission_amount(
    commission_type: CommissionType | str,
    commission_rate: Decimal | int | float | str,
    sale_amount: Decimal | int | float | str,
) -> Decimal:
    """Commission owed for a sale, rounded half-up to cents.

    percentage: sale_amount * rate / 100
    fixed: rate, whatever the sale amount
    """
    rate = to_decimal(commission_rate)
    sale = to_decimal(sale_amount)

    try:
        commission_type = CommissionType(commission_type)
    except ValueError:
        raise ValidationError(f"Unknown commission type: {commission_type}") from None

    if commission_type is CommissionType.PERCENTAGE:
        amount = sale * rate / HUNDRED
    else:
        amount = rate

    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class CommissionResult:
    commission: Commission
    created: bool


class CommissionEngine:
    """Creates at most one pending commission per confirmed conversion."""

    def __init__(self, db: Database):
        self.db = db

    def calculate_commission(self, conversion_id: str) -> CommissionResult:
        """Compute and store the commission for a conversion.

        Args:
            conversion_id: Conversion to pay out on

        Returns:
            The new commission, or the existing one if already calculated

        Raises:
            ConversionNotFoundError: Unknown conversion
            NotAttributedError: Conversion is not confirmed with an affiliate
            VendorNotFoundError: Conversion's vendor vanished
        """
        with self.db.session() as session:
            commissions = CommissionRepository(session)
            existing = commissions.get_by_conversion(conversion_id)
            if existing:
                logger.info(
                    "commission_already_exists",
                    commission_id=existing.id,
                    conversion_id=conversion_id,
                )
                return CommissionResult(commission=existing, created=False)

            # Row lock keeps a concurrent refund from slipping in between check and insert
            conversion = ConversionRepository(session).get_for_update(conversion_id)
            if conversion is None:
                raise ConversionNotFoundError(conversion_id)

            if (
                conversion.status != ConversionStatus.CONFIRMED
                or not conversion.referral_session_id
                or not conversion.affiliate_id
            ):
                raise NotAttributedError(conversion_id, conversion.status.value)

            vendor = VendorRepository(session).get_by_id(conversion.vendor_id)
            if vendor is None:
                raise VendorNotFoundError(conversion.vendor_id)

            commission_amount = compute_commission_amount(
                vendor.commission_type, vendor.commission_value, conversion.amount
            )
            commission = Commission(
                conversion_id=conversion.id,
                affiliate_id=conversion.affiliate_id,
                vendor_id=conversion.vendor_id,
                sale_amount=conversion.amount,
                commission_type=vendor.commission_type,
                commission_rate=vendor.commission_value,
                commission_amount=commission_amount,
                status=CommissionStatus.PENDING,
            )
            try:
                commissions.add(commission)
            except IntegrityError:
                session.rollback()
                existing = commissions.get_by_conversion(conversion_id)
                logger.info(
                    "commission_duplicate_constraint",
                    conversion_id=conversion_id,
                    commission_id=existing.id if existing else None,
                )
                if existing is None:
                    raise
                return CommissionResult(commission=existing, created=False)

        logger.info(
            "commission_created",
            commission_id=commission.id,
            conversion_id=conversion_id,
            affiliate_id=commission.affiliate_id,
            commission_type=commission.commission_type.value,
            amount=str(commission_amount),
        )
        return CommissionResult(commission=commission, created=True)

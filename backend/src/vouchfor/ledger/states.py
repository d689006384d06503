"""Legal status transitions for conversions and commissions."""

from vouchfor.ledger.exceptions import InvalidTransitionError
from vouchfor.storage.models import CommissionStatus, ConversionStatus

CONVERSION_TRANSITIONS: dict[ConversionStatus, frozenset[ConversionStatus]] = {
    ConversionStatus.PENDING: frozenset({ConversionStatus.CONFIRMED, ConversionStatus.FAILED}),
    ConversionStatus.CONFIRMED: frozenset({ConversionStatus.REFUNDED}),
    ConversionStatus.FAILED: frozenset(),
    ConversionStatus.REFUNDED: frozenset(),
}

# pending -> approved -> paid is driven by the external payout workflow
COMMISSION_TRANSITIONS: dict[CommissionStatus, frozenset[CommissionStatus]] = {
    CommissionStatus.PENDING: frozenset({CommissionStatus.APPROVED, CommissionStatus.REVERSED}),
    CommissionStatus.APPROVED: frozenset({CommissionStatus.PAID, CommissionStatus.REVERSED}),
    CommissionStatus.PAID: frozenset(),
    CommissionStatus.REVERSED: frozenset(),
}

REVERSIBLE_COMMISSION_STATUSES = frozenset(
    status
    for status, targets in COMMISSION_TRANSITIONS.items()
    if CommissionStatus.REVERSED in targets
)


def sources_for(target: ConversionStatus | CommissionStatus) -> frozenset:
    """All statuses from which ``target`` may be entered."""
    table = CONVERSION_TRANSITIONS if isinstance(target, ConversionStatus) else COMMISSION_TRANSITIONS
    return frozenset(status for status, targets in table.items() if target in targets)


def can_transition(
    current: ConversionStatus | CommissionStatus,
    target: ConversionStatus | CommissionStatus,
) -> bool:
    """Check whether a status change is legal."""
    if isinstance(current, ConversionStatus) and isinstance(target, ConversionStatus):
        return target in CONVERSION_TRANSITIONS[current]
    if isinstance(current, CommissionStatus) and isinstance(target, CommissionStatus):
        return target in COMMISSION_TRANSITIONS[current]
    return False


def ensure_transition(
    current: ConversionStatus | CommissionStatus,
    target: ConversionStatus | CommissionStatus,
) -> None:
    """Raise InvalidTransitionError unless current -> target is legal."""
    if not can_transition(current, target):
        entity = "conversion" if isinstance(current, ConversionStatus) else "commission"
        raise InvalidTransitionError(entity, current.value, target.value)

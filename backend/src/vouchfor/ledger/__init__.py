"""Referral ledger: attribution, commissions, refunds and the outbox worker."""

from vouchfor.ledger.attribution import AttributionOutcome, AttributionResolver, AttributionResult
from vouchfor.ledger.commission import CommissionEngine, CommissionResult, compute_commission_amount
from vouchfor.ledger.outbox import OutboxWorker
from vouchfor.ledger.refunds import RefundProcessor, RefundResult

__all__ = [
    "AttributionOutcome",
    "AttributionResolver",
    "AttributionResult",
    "CommissionEngine",
    "CommissionResult",
    "OutboxWorker",
    "RefundProcessor",
    "RefundResult",
    "compute_commission_amount",
]

"""Service wiring shared by the API and the CLI."""

from dataclasses import dataclass

from fastapi import Request

from vouchfor.ledger.attribution import AttributionResolver
from vouchfor.ledger.commission import CommissionEngine
from vouchfor.ledger.outbox import OutboxWorker
from vouchfor.ledger.refunds import RefundProcessor
from vouchfor.storage.db import Database
from vouchfor.tracking.clicks import ClickRecorder
from vouchfor.tracking.legacy import LegacyTrackingService
from vouchfor.webhooks.gateway import WebhookGateway


@dataclass
class LedgerServices:
    """All ledger components bound to one database."""
    db: Database
    click_recorder: ClickRecorder
    legacy_tracking: LegacyTrackingService
    commission_engine: CommissionEngine
    resolver: AttributionResolver
    refunds: RefundProcessor
    worker: OutboxWorker
    gateway: WebhookGateway

    @classmethod
    def from_database(cls, db: Database) -> "LedgerServices":
        commission_engine = CommissionEngine(db)
        refunds = RefundProcessor(db)
        worker = OutboxWorker(db, commission_engine=commission_engine, refunds=refunds)
        return cls(
            db=db,
            click_recorder=ClickRecorder(db),
            legacy_tracking=LegacyTrackingService(db),
            commission_engine=commission_engine,
            resolver=AttributionResolver(db, commission_engine=commission_engine),
            refunds=refunds,
            worker=worker,
            gateway=WebhookGateway(db, worker=worker, refunds=refunds),
        )


def get_services(request: Request) -> LedgerServices:
    """FastAPI dependency returning the app's services."""
    return request.app.state.services

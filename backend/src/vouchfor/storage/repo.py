"""Repository layer for data access.

Writes that must happen at most once are expressed either as plain inserts
guarded by a unique constraint (callers treat IntegrityError as "already
exists") or as conditional updates whose affected row count tells the
caller whether it won.
"""

from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from vouchfor.logging_config import get_logger
from vouchfor.storage.models import (
    Commission,
    CommissionStatus,
    Conversion,
    ConversionStatus,
    OutboxKind,
    OutboxStatus,
    OutboxTask,
    ReferralSession,
    SignupReferral,
    Vendor,
)
from vouchfor.utils import utcnow

logger = get_logger(__name__)


class VendorRepository:
    """Read access to vendor programs."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, vendor_id: str) -> Vendor | None:
        """Get vendor by ID."""
        return self.session.get(Vendor, vendor_id)


class ReferralSessionRepository:
    """Repository for click sessions."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        affiliate_id: str,
        vendor: Vendor,
        created_at: datetime | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
        landing_url: str | None = None,
    ) -> ReferralSession:
        """Insert a session expiring ``cookie_duration`` days after creation."""
        created_at = created_at or utcnow()
        referral_session = ReferralSession(
            affiliate_id=affiliate_id,
            vendor_id=vendor.id,
            created_at=created_at,
            expires_at=created_at + timedelta(days=vendor.cookie_duration),
            is_active=True,
            user_agent=user_agent,
            ip_address=ip_address,
            landing_url=landing_url,
        )
        self.session.add(referral_session)
        self.session.flush()
        return referral_session

    def find_last_click(self, vendor_id: str, converted_at: datetime) -> ReferralSession | None:
        """Most recent active session for a vendor still valid at ``converted_at``.

        Expiry is strict: a session expiring exactly at the conversion time
        is not eligible.
        """
        stmt = (
            select(ReferralSession)
            .where(
                ReferralSession.vendor_id == vendor_id,
                ReferralSession.is_active.is_(True),
                ReferralSession.expires_at > converted_at,
            )
            .order_by(ReferralSession.created_at.desc(), ReferralSession.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def find_latest_for_affiliate(self, affiliate_id: str) -> ReferralSession | None:
        """Most recent active session for an affiliate across all vendors."""
        stmt = (
            select(ReferralSession)
            .where(
                ReferralSession.affiliate_id == affiliate_id,
                ReferralSession.is_active.is_(True),
            )
            .order_by(ReferralSession.created_at.desc(), ReferralSession.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)


class ConversionRepository:
    """Repository for conversions."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, conversion_id: str) -> Conversion | None:
        """Get conversion by ID."""
        return self.session.get(Conversion, conversion_id)

    def get_for_update(self, conversion_id: str) -> Conversion | None:
        """Get conversion by ID, locking the row where the backend supports it."""
        return self.session.scalar(
            select(Conversion).where(Conversion.id == conversion_id).with_for_update()
        )

    def get_by_idempotency_key(self, idempotency_key: str) -> Conversion | None:
        """Get conversion by idempotency key."""
        return self.session.scalar(
            select(Conversion).where(Conversion.idempotency_key == idempotency_key)
        )

    def list_by_transaction(self, external_transaction_id: str) -> list[Conversion]:
        """All conversions recorded for a provider transaction."""
        return list(
            self.session.scalars(
                select(Conversion)
                .where(Conversion.external_transaction_id == external_transaction_id)
                .order_by(Conversion.created_at)
            )
        )

    def add(self, conversion: Conversion) -> Conversion:
        """Insert a conversion. Raises IntegrityError on a duplicate key."""
        self.session.add(conversion)
        self.session.flush()
        return conversion

    def set_attribution(
        self,
        conversion_id: str,
        referral_session: ReferralSession,
        confirmed_at: datetime,
    ) -> bool:
        """Attach a session to a pending conversion.

        Returns:
            False if another writer already moved the conversion out of pending
        """
        result = self.session.execute(
            update(Conversion)
            .where(
                Conversion.id == conversion_id,
                Conversion.status == ConversionStatus.PENDING,
                Conversion.referral_session_id.is_(None),
            )
            .values(
                referral_session_id=referral_session.id,
                affiliate_id=referral_session.affiliate_id,
                status=ConversionStatus.CONFIRMED,
                confirmed_at=confirmed_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_failed(self, conversion_id: str) -> bool:
        """Move a pending conversion to failed."""
        result = self.session.execute(
            update(Conversion)
            .where(
                Conversion.id == conversion_id,
                Conversion.status == ConversionStatus.PENDING,
            )
            .values(status=ConversionStatus.FAILED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_refunded(self, conversion_id: str, refunded_at: datetime) -> bool:
        """Move a confirmed conversion to refunded."""
        result = self.session.execute(
            update(Conversion)
            .where(
                Conversion.id == conversion_id,
                Conversion.status == ConversionStatus.CONFIRMED,
            )
            .values(status=ConversionStatus.REFUNDED, refunded_at=refunded_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class CommissionRepository:
    """Repository for commissions."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_conversion(self, conversion_id: str) -> Commission | None:
        """Get the commission created for a conversion, if any."""
        return self.session.scalar(
            select(Commission).where(Commission.conversion_id == conversion_id)
        )

    def add(self, commission: Commission) -> Commission:
        """Insert a commission. Raises IntegrityError if one exists for the conversion."""
        self.session.add(commission)
        self.session.flush()
        return commission

    def reverse_for_conversion(
        self,
        conversion_id: str,
        statuses: frozenset[CommissionStatus],
        reversed_at: datetime,
    ) -> int:
        """Reverse the conversion's commissions currently in ``statuses``.

        Returns:
            Number of commissions reversed
        """
        result = self.session.execute(
            update(Commission)
            .where(
                Commission.conversion_id == conversion_id,
                Commission.status.in_(list(statuses)),
            )
            .values(status=CommissionStatus.REVERSED, reversed_at=reversed_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class OutboxRepository:
    """Repository for deferred ledger work."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, kind: OutboxKind, conversion_id: str) -> OutboxTask | None:
        """Get the task of a kind for a conversion."""
        return self.session.scalar(
            select(OutboxTask).where(
                OutboxTask.kind == kind,
                OutboxTask.conversion_id == conversion_id,
            )
        )

    def enqueue(
        self,
        kind: OutboxKind,
        conversion_id: str,
        available_at: datetime | None = None,
    ) -> OutboxTask:
        """Add a task unless one of the same kind already exists for the conversion."""
        existing = self.get(kind, conversion_id)
        if existing:
            return existing

        task = OutboxTask(
            kind=kind,
            conversion_id=conversion_id,
            status=OutboxStatus.PENDING,
            attempts=0,
            available_at=available_at or utcnow(),
        )
        self.session.add(task)
        self.session.flush()
        logger.debug("outbox_task_enqueued", kind=kind.value, conversion_id=conversion_id)
        return task

    def _due_clause(self, now: datetime):
        return or_(
            and_(OutboxTask.status == OutboxStatus.PENDING, OutboxTask.available_at <= now),
            and_(OutboxTask.status == OutboxStatus.RUNNING, OutboxTask.locked_until < now),
        )

    def list_due_ids(
        self,
        now: datetime,
        limit: int,
        conversion_id: str | None = None,
    ) -> list[int]:
        """IDs of tasks ready to run, oldest first."""
        stmt = select(OutboxTask.id).where(self._due_clause(now))
        if conversion_id is not None:
            stmt = stmt.where(OutboxTask.conversion_id == conversion_id)
        stmt = stmt.order_by(OutboxTask.available_at, OutboxTask.id).limit(limit)
        return list(self.session.scalars(stmt))

    def claim(self, task_id: int, now: datetime, lease_seconds: int) -> bool:
        """Take a lease on a due task. False if another worker got it first."""
        result = self.session.execute(
            update(OutboxTask)
            .where(OutboxTask.id == task_id, self._due_clause(now))
            .values(
                status=OutboxStatus.RUNNING,
                locked_until=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get_by_id(self, task_id: int) -> OutboxTask | None:
        """Get task by ID."""
        return self.session.get(OutboxTask, task_id)

    def mark_done(self, task_id: int) -> None:
        """Record successful completion."""
        self.session.execute(
            update(OutboxTask)
            .where(OutboxTask.id == task_id)
            .values(
                status=OutboxStatus.DONE,
                attempts=OutboxTask.attempts + 1,
                locked_until=None,
                last_error=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    def mark_failed(
        self,
        task_id: int,
        error: str,
        next_attempt_at: datetime | None,
    ) -> None:
        """Record a failed attempt; ``next_attempt_at=None`` dead-letters the task."""
        status = OutboxStatus.DEAD if next_attempt_at is None else OutboxStatus.PENDING
        values = {
            "status": status,
            "attempts": OutboxTask.attempts + 1,
            "last_error": error[:2000],
            "locked_until": None,
            "updated_at": utcnow(),
        }
        if next_attempt_at is not None:
            values["available_at"] = next_attempt_at
        self.session.execute(
            update(OutboxTask)
            .where(OutboxTask.id == task_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def count_by_status(self) -> dict[str, int]:
        """Task counts keyed by status value."""
        rows = self.session.execute(
            select(OutboxTask.status, func.count(OutboxTask.id)).group_by(OutboxTask.status)
        )
        return {status.value: count for status, count in rows}

    def list_dead(self, limit: int = 50) -> list[OutboxTask]:
        """Dead-lettered tasks, most recent first."""
        return list(
            self.session.scalars(
                select(OutboxTask)
                .where(OutboxTask.status == OutboxStatus.DEAD)
                .order_by(OutboxTask.updated_at.desc())
                .limit(limit)
            )
        )


class SignupReferralRepository:
    """Repository for legacy signup records."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, affiliate_id: str, vendor_id: str) -> SignupReferral | None:
        """Get the signup recorded for an (affiliate, vendor) pair."""
        return self.session.scalar(
            select(SignupReferral).where(
                SignupReferral.affiliate_id == affiliate_id,
                SignupReferral.vendor_id == vendor_id,
            )
        )

    def add(self, signup: SignupReferral) -> SignupReferral:
        """Insert a signup. Raises IntegrityError on a duplicate pair."""
        self.session.add(signup)
        self.session.flush()
        return signup
